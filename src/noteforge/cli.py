"""
Command-line interface for NoteForge.

    noteforge demo [--embed]
    noteforge ask --owner ID (--book ID | --series ID) [--rag] QUESTION
    noteforge serve [--host HOST] [--port PORT]
"""
import argparse
import sys

from rich.panel import Panel
from rich.table import Table

from .config import DB_PATH, RETRIEVAL_MODE, console
from .errors import AskError
from .models import EmbeddingStatus
from .note_store import SqliteNoteStore
from .observability import get_logger

logger = get_logger(__name__)

DEMO_OWNER_ID = "demo-writer"

# (series order, book title, [(chapter title, [note, ...]), ...])
_DEMO_LIBRARY = (
    (
        1,
        "The Salt Road",
        (
            ("Harbour", (
                "Mara grew up in the harbour town of Keld and never learned to swim.",
                "Mara's brother Tobin left on a salt caravan when she was twelve.",
            )),
            ("The Caravan", (
                "The caravan master Oren owes Mara's family a debt from the flood year.",
                "Tobin was last seen at the well of Ashtar, heading east.",
            )),
        ),
    ),
    (
        2,
        "Ashtar",
        (
            ("The Well", (
                "At Ashtar, Mara finds Tobin's knife buried under the well stones.",
                "The well keeper claims no caravan has passed in three years.",
            )),
        ),
    ),
)


def display_banner():
    console.print(Panel(
        "[bold magenta]NoteForge - Ask your notes[/bold magenta]",
        subtitle=f"[cyan]Retrieval mode: {RETRIEVAL_MODE}[/cyan]",
        expand=False,
    ))


def seed_demo_library(store: SqliteNoteStore, owner_id: str = DEMO_OWNER_ID, *, embeddings=None) -> dict:
    """Writes a two-book series into the store; with `embeddings`, also indexes every note."""
    series_id = store.add_series(owner_id, "The Salt Road Cycle")
    book_ids = []
    for series_order, book_title, chapters in _DEMO_LIBRARY:
        book_id = store.add_book(owner_id, book_title, series_id=series_id, series_order=series_order)
        book_ids.append(book_id)
        for order, (chapter_title, notes) in enumerate(chapters):
            chapter_id = store.add_chapter(owner_id, book_id, chapter_title, order=order)
            for content in notes:
                status = EmbeddingStatus.PENDING if embeddings is None else EmbeddingStatus.PROCESSING
                note_id = store.add_note(owner_id, chapter_id, content, embedding_status=status)
                if embeddings is not None:
                    vector = embeddings.embed_documents([content])[0]
                    store.add_note_chunk(owner_id, note_id, content, vector)
    logger.info("demo_library_seeded", owner_id=owner_id, books=len(book_ids), indexed=embeddings is not None)
    return {"owner_id": owner_id, "series_id": series_id, "book_ids": book_ids}


def cmd_demo(args) -> int:
    embeddings = None
    if args.embed:
        from .providers import get_embeddings

        with console.status("[bold cyan]Loading embedding model...[/bold cyan]", spinner="dots"):
            embeddings = get_embeddings()
    store = SqliteNoteStore(args.db)
    try:
        seeded = seed_demo_library(store, args.owner, embeddings=embeddings)
    finally:
        store.close()

    table = Table(title="Demo library")
    table.add_column("Kind", style="cyan")
    table.add_column("Id", style="green")
    table.add_row("owner", seeded["owner_id"])
    table.add_row("series", seeded["series_id"])
    for book_id in seeded["book_ids"]:
        table.add_row("book", book_id)
    console.print(table)
    return 0


def cmd_ask(args) -> int:
    from .providers import build_default_service

    scope = {"series_id": args.series} if args.series else {"book_id": args.book}
    query = {"query_text": args.question, "scope": scope}
    if args.threshold is not None or args.top_k is not None:
        query["retrieval"] = {
            key: value
            for key, value in (("match_threshold", args.threshold), ("match_count", args.top_k))
            if value is not None
        }

    try:
        service = build_default_service(retrieval_mode="rag" if args.rag else RETRIEVAL_MODE, db_path=args.db)
    except Exception as exc:
        console.print(f"[bold red]Failed to initialize the ask service: {exc}[/bold red]")
        return 1

    try:
        with console.status("[bold cyan]Thinking...[/bold cyan]", spinner="dots"):
            result = service.answer(query, args.owner, locale=args.lang)
    except AskError as exc:
        console.print(Panel(exc.message, title=f"[bold red]{exc.code}[/bold red]", border_style="red"))
        return 1
    finally:
        if service.query_log is not None:
            service.query_log.close(wait=True)

    style = "yellow" if result.answer.low_confidence else "green"
    console.print(Panel(result.answer.text, title="[bold]Answer[/bold]", border_style=style))
    usage = result.usage
    console.print(f"[dim]model={usage.model} latency={usage.latency_ms} ms low_confidence={result.answer.low_confidence}[/dim]")
    for idx, citation in enumerate(result.citations or [], start=1):
        console.print(
            f"[cyan][{idx}][/cyan] {citation.book_title} / {citation.chapter_title} "
            f"(similarity {citation.similarity:.3f})"
        )
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("noteforge.api_server:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="noteforge", description="Ask questions about your book notes.")
    parser.add_argument("--db", default=str(DB_PATH), help="SQLite library path")
    sub = parser.add_subparsers(dest="command", required=True)

    demo = sub.add_parser("demo", help="Seed a sample library")
    demo.add_argument("--owner", default=DEMO_OWNER_ID)
    demo.add_argument("--embed", action="store_true", help="Also index notes with the embedding model")
    demo.set_defaults(func=cmd_demo)

    ask = sub.add_parser("ask", help="Ask one question over a book or a series")
    ask.add_argument("--owner", required=True)
    target = ask.add_mutually_exclusive_group(required=True)
    target.add_argument("--book")
    target.add_argument("--series")
    ask.add_argument("--rag", action="store_true", help="Rank indexed chunks and return citations")
    ask.add_argument("--threshold", type=float)
    ask.add_argument("--top-k", type=int)
    ask.add_argument("--lang", default="en")
    ask.add_argument("question")
    ask.set_defaults(func=cmd_ask)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    display_banner()
    try:
        code = args.func(args)
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
