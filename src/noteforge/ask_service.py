"""
Single-turn "Ask" orchestration: validate, log, resolve, (rank), assemble,
gate, generate, respond.

Each call is independent and keeps no state between requests. The only write it
causes is the query-log record, issued fire-and-forget so its failure can never
change the answer.
"""
from __future__ import annotations

import time
from concurrent.futures import Future
from typing import Any

from pydantic import ValidationError

from .answer_generator import AnswerGenerator, GenerationOk, GenerationProviderError, GenerationSchemaError
from .config import RETRIEVAL_MODE
from .confidence import ConfidenceGate
from .context_assembler import ContextAssembler
from .errors import (
    AskError,
    InternalError,
    InvalidRequestError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUpstreamError,
    RateLimitedError,
)
from .metrics import MetricsCollector, metrics_collector
from .models import AskAnswer, AskQuery, Citation, RetrievalOptions
from .note_store import NoteRepository
from .observability import get_logger
from .prompts import normalize_locale
from .query_log import QueryLogEmitter
from .scope_resolver import ScopeResolver
from .similarity import SimilarityRanker

logger = get_logger(__name__)

RETRIEVAL_MODES = ("simple", "rag")


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]


def validate_ask_query(payload: AskQuery | dict[str, Any]) -> AskQuery:
    if isinstance(payload, AskQuery):
        return payload
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    try:
        return AskQuery.model_validate(payload)
    except ValidationError as exc:
        raise InvalidRequestError("Invalid request", details=_validation_details(exc)) from exc


class AskService:
    """Entry point of the ask pipeline (QueryOrchestrator)."""

    def __init__(
        self,
        *,
        repository: NoteRepository,
        generator: AnswerGenerator,
        query_log: QueryLogEmitter | None = None,
        ranker: SimilarityRanker | None = None,
        retrieval_mode: str = RETRIEVAL_MODE,
        resolver: ScopeResolver | None = None,
        assembler: ContextAssembler | None = None,
        gate: ConfidenceGate | None = None,
        metrics: MetricsCollector | None = metrics_collector,
    ):
        if retrieval_mode not in RETRIEVAL_MODES:
            raise ValueError(f"Unknown retrieval mode '{retrieval_mode}'")
        if retrieval_mode == "rag" and ranker is None:
            raise ValueError("retrieval mode 'rag' requires a SimilarityRanker")
        self.repository = repository
        self.generator = generator
        self.query_log = query_log
        self.ranker = ranker
        self.retrieval_mode = retrieval_mode
        self.resolver = resolver or ScopeResolver(repository)
        self.assembler = assembler or ContextAssembler()
        self.gate = gate or ConfidenceGate()
        self.metrics = metrics

    @property
    def uses_rag(self) -> bool:
        return self.retrieval_mode == "rag"

    def answer(self, query: AskQuery | dict[str, Any], owner_id: str, *, locale: str | None = None) -> AskAnswer:
        start = time.perf_counter()
        lang = normalize_locale(locale)

        # 1. Validate (before any repository or provider call).
        if not str(owner_id or "").strip():
            raise InvalidRequestError("owner id is required")
        ask = validate_ask_query(query)

        search_future = self._emit_search(owner_id, ask.query_text)
        try:
            result, generated = self._run(ask, owner_id, lang, start)
        except AskError as exc:
            self._record_failure(start, exc.code)
            self._emit_error(owner_id, search_future, exc.source, exc.message)
            raise
        except Exception as exc:
            logger.exception("ask_unexpected_error", owner_id=owner_id, scope=ask.scope.kind)
            self._record_failure(start, InternalError.code)
            self._emit_error(owner_id, search_future, "database", str(exc))
            raise InternalError("An unexpected error occurred. Please try again.") from exc

        if self.metrics is not None:
            self.metrics.record_request(
                float(result.usage.latency_ms),
                success=True,
                model=result.usage.model,
                low_confidence=result.answer.low_confidence,
                generated=generated,
                retrieved_chunks=result.usage.retrieved_chunks,
            )
        return result

    def _run(self, ask: AskQuery, owner_id: str, locale: str, start: float) -> tuple[AskAnswer, bool]:
        # 2. Resolve.
        resolved = self.resolver.resolve(ask.scope, owner_id)

        # 3. Assemble (ranking first in the full-RAG variant).
        ranked = None
        if self.uses_rag and not resolved.is_empty:
            options = ask.retrieval or RetrievalOptions()
            candidates = self.repository.list_note_chunks(owner_id, resolved.note_ids)
            ranked = self.ranker.rank(
                ask.query_text,
                candidates,
                threshold=options.match_threshold,
                top_k=options.match_count,
            )
        context = self.assembler.assemble(resolved.notes, ask.query_text, ranked=ranked)

        # 4. Pre-generation gate.
        if self.uses_rag:
            eligible = len(resolved.notes)
            ranker_count = len(context.ranked)
        else:
            eligible = context.used_count
            ranker_count = None
        if not self.gate.should_answer(eligible, ranker_count):
            logger.info(
                "ask_low_confidence_fallback",
                scope=ask.scope.kind,
                eligible_notes=eligible,
                ranked_chunks=ranker_count,
            )
            fallback = self.gate.fallback_answer(
                model=self.generator.model_name,
                latency_ms=self._elapsed_ms(start),
                locale=locale,
                retrieved_chunks=0 if self.uses_rag else None,
                with_citations=self.uses_rag,
            )
            return fallback, False

        # 5. Generate.
        outcome = self.generator.generate(
            ask.query_text,
            context.text,
            citations_required=self.uses_rag,
            locale=locale,
        )
        if isinstance(outcome, GenerationProviderError):
            raise self._provider_failure(outcome)
        if isinstance(outcome, GenerationSchemaError):
            raise InternalError(
                "The model returned an answer in an unexpected format. Please try again.",
                details={"retryable": True},
                source="llm",
            )
        if not isinstance(outcome, GenerationOk):
            raise InternalError(f"Unexpected generation result: {type(outcome).__name__}")

        # 6. Post-generation gate and response.
        citations = [Citation.from_ranked(item) for item in context.ranked] if self.uses_rag else None
        answer = self.gate.finalize(
            outcome.answer,
            model=outcome.model,
            latency_ms=self._elapsed_ms(start),
            retrieved_chunks=len(context.ranked) if self.uses_rag else None,
            citations=citations,
        )
        logger.info(
            "ask_answered",
            scope=ask.scope.kind,
            notes=len(resolved.notes),
            context_entries=context.used_count,
            low_confidence=answer.answer.low_confidence,
            latency_ms=answer.usage.latency_ms,
        )
        return answer, True

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)

    @staticmethod
    def _provider_failure(outcome: GenerationProviderError) -> AskError:
        cause = outcome.error
        if isinstance(cause, ProviderRateLimitError):
            error: AskError = RateLimitedError(
                "Rate limit exceeded. Please try again later.",
                retry_after_s=cause.retry_after_s,
            )
        else:
            retryable = isinstance(cause, ProviderTimeoutError) or (
                isinstance(cause, ProviderUpstreamError) and (cause.status is None or cause.status >= 500)
            )
            error = InternalError(
                "The answer service is temporarily unavailable. Please try again.",
                details={"retryable": retryable},
                source="llm",
            )
        error.__cause__ = cause
        return error

    def _record_failure(self, start: float, code: str):
        if self.metrics is not None:
            self.metrics.record_request(float(self._elapsed_ms(start)), success=False, error_code=code)

    def _emit_search(self, owner_id: str, query_text: str) -> Future | None:
        if self.query_log is None:
            return None
        try:
            return self.query_log.emit_search(owner_id, query_text)
        except Exception as exc:
            # Scheduling itself failed (e.g. the pool is shut down); the answer still proceeds.
            logger.warning("query_log_emit_failed", owner_id=owner_id, error_type=type(exc).__name__)
            return None

    def _emit_error(self, owner_id: str, search_future: Future | None, source: str, message: str):
        if self.query_log is None:
            return
        try:
            self.query_log.emit_error(owner_id, search_future, source, message)
        except Exception as exc:
            logger.warning("query_log_emit_failed", owner_id=owner_id, error_type=type(exc).__name__)
