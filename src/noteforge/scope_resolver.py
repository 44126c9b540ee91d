"""Turns a book/series scope into the owner's notes eligible for retrieval."""
from __future__ import annotations

from dataclasses import dataclass, field

from .config import MAX_CONTEXT_NOTES
from .errors import InvalidRequestError, NotFoundError
from .models import QueryScope, ScopedNote
from .note_store import NoteRepository
from .observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedScope:
    kind: str
    target_id: str
    notes: list[ScopedNote] = field(default_factory=list)
    capped_count: int = 0

    @property
    def note_ids(self) -> list[str]:
        return [scoped.id for scoped in self.notes]

    @property
    def is_empty(self) -> bool:
        return not self.notes


class ScopeResolver:
    """
    Resolves scopes strictly within one owner's library.

    A target owned by somebody else is reported exactly like a missing one, and
    the note listing itself is filtered by owner again, so caller-supplied ids
    are never trusted on their own.
    """

    def __init__(self, repository: NoteRepository, *, max_notes: int | None = MAX_CONTEXT_NOTES):
        self.repository = repository
        self.max_notes = max_notes

    def resolve(self, scope: QueryScope, owner_id: str) -> ResolvedScope:
        if not str(owner_id or "").strip():
            raise InvalidRequestError("owner id is required")
        if (scope.book_id is None) == (scope.series_id is None):
            raise InvalidRequestError(
                "scope must set exactly one of book_id or series_id",
                details={"path": ["scope"]},
            )

        target_id = scope.target_id
        if scope.kind == "book":
            if self.repository.get_book(owner_id, target_id) is None:
                raise NotFoundError(f"Book {target_id} not found")
            notes = self.repository.list_book_notes(owner_id, target_id)
        else:
            if self.repository.get_series(owner_id, target_id) is None:
                raise NotFoundError(f"Series {target_id} not found")
            notes = self.repository.list_series_notes(owner_id, target_id)

        # Every returned note must belong to the caller.
        foreign = [scoped.id for scoped in notes if scoped.note.owner_id != owner_id]
        if foreign:
            logger.error("scope_resolver_foreign_notes_dropped", scope=scope.kind, count=len(foreign))
            notes = [scoped for scoped in notes if scoped.note.owner_id == owner_id]

        notes, capped = self._cap(notes)
        logger.info(
            "scope_resolved",
            scope=scope.kind,
            target_id=target_id,
            note_count=len(notes),
            capped_count=capped,
        )
        return ResolvedScope(kind=scope.kind, target_id=target_id, notes=notes, capped_count=capped)

    def _cap(self, notes: list[ScopedNote]) -> tuple[list[ScopedNote], int]:
        if self.max_notes is None or len(notes) <= self.max_notes:
            return list(notes), 0
        # Keep the most recently edited notes, then restore reading order.
        newest = sorted(notes, key=lambda s: (s.note.updated_at, s.id), reverse=True)[: self.max_notes]
        keep = {scoped.id for scoped in newest}
        kept = [scoped for scoped in notes if scoped.id in keep]
        return kept, len(notes) - len(kept)
