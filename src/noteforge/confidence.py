"""Low-confidence policy: when to skip generation and what to answer instead."""
from __future__ import annotations

from .models import AnswerPayload, AskAnswer, AskUsage

FALLBACK_TEXTS = {
    "en": (
        "I couldn't find enough information in your notes to answer this question. "
        "Try adding notes for this book or series, or rephrase the question."
    ),
    "pl": (
        "Nie znalazłem w Twoich notatkach wystarczających informacji, aby odpowiedzieć na to pytanie. "
        "Dodaj notatki do tej książki lub serii albo przeformułuj pytanie."
    ),
}
FALLBACK_TEXT = FALLBACK_TEXTS["en"]


def fallback_text(locale: str = "en") -> str:
    return FALLBACK_TEXTS.get(locale, FALLBACK_TEXT)


class ConfidenceGate:
    """Decides whether the model may be asked at all; never calls it itself."""

    def should_answer(self, eligible_count: int, ranker_result_count: int | None = None) -> bool:
        if int(eligible_count) <= 0:
            return False
        if ranker_result_count is not None and int(ranker_result_count) <= 0:
            return False
        return True

    def fallback_answer(
        self,
        *,
        model: str,
        latency_ms: int,
        locale: str = "en",
        retrieved_chunks: int | None = None,
        with_citations: bool = False,
    ) -> AskAnswer:
        return AskAnswer(
            answer=AnswerPayload(text=fallback_text(locale), low_confidence=True),
            usage=AskUsage(model=model, latency_ms=int(latency_ms), retrieved_chunks=retrieved_chunks),
            citations=[] if with_citations else None,
        )

    def finalize(
        self,
        generated: AnswerPayload,
        *,
        model: str,
        latency_ms: int,
        retrieved_chunks: int | None = None,
        citations=None,
    ) -> AskAnswer:
        """Post-generation gate: the model's own low_confidence flag passes through unchanged."""
        return AskAnswer(
            answer=AnswerPayload(text=generated.text, low_confidence=generated.low_confidence),
            usage=AskUsage(model=model, latency_ms=int(latency_ms), retrieved_chunks=retrieved_chunks),
            citations=citations,
        )
