"""
Records read by the ask pipeline and the request/response models it exchanges.

Library records (series, books, chapters, notes, chunks) are owned by the CRUD
layer; the pipeline only reads them, so they are frozen dataclasses. Request and
response shapes are pydantic models validated at the pipeline boundary.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, field_validator, model_validator

from .config import MATCH_COUNT, MATCH_COUNT_MAX, MATCH_THRESHOLD, QUERY_MAX_CHARS


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Series:
    id: str
    owner_id: str
    title: str


@dataclass(frozen=True)
class Book:
    id: str
    owner_id: str
    title: str
    series_id: str | None = None
    series_order: int | None = None


@dataclass(frozen=True)
class Note:
    id: str
    owner_id: str
    chapter_id: str
    content: str
    created_at: datetime
    updated_at: datetime
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING


@dataclass(frozen=True)
class ScopedNote:
    """A note together with the chapter/book it was written under."""

    note: Note
    book_id: str
    book_title: str
    chapter_id: str
    chapter_title: str
    chapter_order: int
    series_order: int | None = None

    @property
    def id(self) -> str:
        return self.note.id


@dataclass(frozen=True)
class NoteChunk:
    """A retrievable slice of a note with its stored embedding vector."""

    id: str
    note_id: str
    content: str
    embedding: tuple[float, ...]
    book_id: str
    book_title: str
    chapter_id: str
    chapter_title: str


@dataclass(frozen=True)
class RankedChunk:
    chunk: NoteChunk
    similarity: float


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class QueryScope(BaseModel):
    """Either a book or a series; exactly one identifier must be set."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    book_id: UUID | None = None
    series_id: UUID | None = None

    @model_validator(mode="after")
    def _exactly_one_target(self):
        if (self.book_id is None) == (self.series_id is None):
            raise ValueError("scope must set exactly one of book_id or series_id")
        return self

    @property
    def kind(self) -> str:
        return "book" if self.book_id is not None else "series"

    @property
    def target_id(self) -> str:
        return str(self.book_id if self.book_id is not None else self.series_id)


class RetrievalOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    match_threshold: float = Field(default=MATCH_THRESHOLD, ge=-1.0, le=1.0)
    match_count: int = Field(default=MATCH_COUNT, ge=1, le=MATCH_COUNT_MAX)


class AskQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query_text: str = Field(min_length=1, max_length=QUERY_MAX_CHARS)
    scope: QueryScope
    retrieval: RetrievalOptions | None = None

    @field_validator("query_text", mode="before")
    @classmethod
    def _strip_query(cls, value: Any):
        return value.strip() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class AnswerPayload(BaseModel):
    """The structured object the model must return. Keys beyond the two fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    text: StrictStr
    low_confidence: StrictBool


class Citation(BaseModel):
    note_embedding_id: str
    note_id: str
    chunk_content: str
    similarity: float
    book_id: str
    chapter_id: str
    book_title: str
    chapter_title: str

    @classmethod
    def from_ranked(cls, ranked: RankedChunk) -> "Citation":
        chunk = ranked.chunk
        return cls(
            note_embedding_id=chunk.id,
            note_id=chunk.note_id,
            chunk_content=chunk.content,
            similarity=round(float(ranked.similarity), 6),
            book_id=chunk.book_id,
            chapter_id=chunk.chapter_id,
            book_title=chunk.book_title,
            chapter_title=chunk.chapter_title,
        )


class AskUsage(BaseModel):
    model: str
    latency_ms: int
    retrieved_chunks: int | None = None


class AskAnswer(BaseModel):
    answer: AnswerPayload
    usage: AskUsage
    citations: list[Citation] | None = None

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

