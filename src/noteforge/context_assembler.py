"""
Builds the bounded prompt context from resolved notes or ranked chunks.

Truncation is deterministic. Whole notes: newest first (by `updated_at`, then
id), stopping at the first note that no longer fits, so the oldest notes are the
ones dropped. Ranked chunks: in rank order, so the least relevant are dropped.
Only the first entry may be cut mid-text, when it alone exceeds the budget.
Everything dropped is reported in `dropped_ids`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from .config import CONTEXT_CHAR_BUDGET
from .models import RankedChunk, ScopedNote
from .observability import get_logger

logger = get_logger(__name__)

TRUNCATION_MARKER = " [...]"


@dataclass(frozen=True)
class AssembledContext:
    text: str
    note_ids: list[str] = field(default_factory=list)
    dropped_ids: list[str] = field(default_factory=list)
    ranked: list[RankedChunk] = field(default_factory=list)
    truncated: bool = False

    @property
    def used_count(self) -> int:
        return len(self.ranked) if self.ranked else len(self.note_ids)

    @property
    def is_empty(self) -> bool:
        return self.used_count == 0


def _cut(text: str, limit: int) -> str:
    if limit <= len(TRUNCATION_MARKER):
        return ""
    return text[: limit - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER


def _note_header(scoped: ScopedNote) -> str:
    return f"Book: {scoped.book_title}\nChapter: {scoped.chapter_title}\n"


def _note_block(index: int, scoped: ScopedNote, content: str) -> str:
    return f"[Note {index}] (ID: {scoped.id})\n{content}\n\n"


def _chunk_block(index: int, ranked: RankedChunk, content: str) -> str:
    chunk = ranked.chunk
    return (
        f"[Source {index}] (note {chunk.note_id}, similarity {ranked.similarity:.3f})\n"
        f"Book: {chunk.book_title} / Chapter: {chunk.chapter_title}\n"
        f"{content}\n\n"
    )


class ContextAssembler:
    def __init__(self, char_budget: int = CONTEXT_CHAR_BUDGET):
        self.char_budget = int(char_budget)

    def assemble(
        self,
        notes: Sequence[ScopedNote],
        query_text: str,
        *,
        ranked: Sequence[RankedChunk] | None = None,
    ) -> AssembledContext:
        if ranked is not None:
            allowed = {scoped.id for scoped in notes}
            in_scope = [item for item in ranked if item.chunk.note_id in allowed]
            if len(in_scope) != len(ranked):
                logger.error("context_out_of_scope_chunks_dropped", count=len(ranked) - len(in_scope))
            context = self._assemble_ranked(in_scope)
        else:
            context = self._assemble_notes(list(notes))

        if context.dropped_ids or context.truncated:
            logger.info(
                "context_truncated",
                budget=self.char_budget,
                kept=context.used_count,
                dropped=len(context.dropped_ids),
                first_entry_cut=context.truncated,
            )
        logger.info(
            "context_assembled",
            chars=len(context.text),
            entries=context.used_count,
            query_chars=len(query_text or ""),
        )
        return context

    def _assemble_notes(self, notes: list[ScopedNote]) -> AssembledContext:
        if not notes:
            return AssembledContext(text="")

        # Header cost is charged per note, an upper bound on the shared headers rendered below.
        newest_first = sorted(notes, key=lambda s: (s.note.updated_at, s.id), reverse=True)
        selected: dict[str, str] = {}
        used = 0
        truncated = False
        for scoped in newest_first:
            overhead = len(_note_header(scoped)) + len(_note_block(len(notes), scoped, ""))
            cost = overhead + len(scoped.note.content)
            if used + cost <= self.char_budget:
                selected[scoped.id] = scoped.note.content
                used += cost
                continue
            if not selected:
                content = _cut(scoped.note.content, self.char_budget - overhead)
                if content:
                    selected[scoped.id] = content
                    truncated = True
            break

        parts: list[str] = []
        last_group = None
        index = 0
        for scoped in notes:
            if scoped.id not in selected:
                continue
            group = (scoped.book_id, scoped.chapter_id)
            if group != last_group:
                parts.append(_note_header(scoped))
                last_group = group
            index += 1
            parts.append(_note_block(index, scoped, selected[scoped.id]))

        kept_ids = [scoped.id for scoped in notes if scoped.id in selected]
        dropped = [scoped.id for scoped in notes if scoped.id not in selected]
        return AssembledContext(
            text="".join(parts).rstrip() + "\n" if parts else "",
            note_ids=kept_ids,
            dropped_ids=dropped,
            truncated=truncated,
        )

    def _assemble_ranked(self, ranked: list[RankedChunk]) -> AssembledContext:
        parts: list[str] = []
        kept: list[RankedChunk] = []
        used = 0
        truncated = False
        for item in ranked:
            block = _chunk_block(len(kept) + 1, item, item.chunk.content)
            if used + len(block) <= self.char_budget:
                parts.append(block)
                kept.append(item)
                used += len(block)
                continue
            if not kept:
                overhead = len(_chunk_block(1, item, ""))
                content = _cut(item.chunk.content, self.char_budget - overhead)
                if content:
                    parts.append(_chunk_block(1, item, content))
                    kept.append(item)
                    truncated = True
            break

        kept_ids = {item.chunk.id for item in kept}
        return AssembledContext(
            text="".join(parts).rstrip() + "\n" if parts else "",
            note_ids=list(dict.fromkeys(item.chunk.note_id for item in kept)),
            dropped_ids=[item.chunk.id for item in ranked if item.chunk.id not in kept_ids],
            ranked=kept,
            truncated=truncated,
        )
