"""
Grounded answer generation.

The model is asked for a `{text, low_confidence}` JSON object. Its reply is
validated as soon as it comes back and reported as a tagged result:
`GenerationOk`, `GenerationSchemaError` or `GenerationProviderError`. Nothing is
retried here.
"""
from __future__ import annotations

import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import ValidationError

from .config import API_WORKERS, PROVIDER_TIMEOUT_S, provider_model_name
from .errors import (
    ProviderAuthError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUpstreamError,
)
from .models import AnswerPayload
from .observability import get_logger
from .prompts import build_answer_prompt, citation_rule

logger = get_logger(__name__)

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_RAW_SNIPPET_CHARS = 200


@dataclass(frozen=True)
class GenerationOk:
    answer: AnswerPayload
    model: str
    latency_ms: int


@dataclass(frozen=True)
class GenerationSchemaError:
    raw_snippet: str
    issues: list[dict[str, Any]] = field(default_factory=list)
    model: str = ""
    latency_ms: int = 0


@dataclass(frozen=True)
class GenerationProviderError:
    error: ProviderError
    model: str = ""
    latency_ms: int = 0


GenerationResult = Union[GenerationOk, GenerationSchemaError, GenerationProviderError]


def _retry_after_seconds(exc: Exception) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    raw = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def classify_provider_exception(exc: BaseException) -> ProviderError:
    """Maps client library exceptions onto the provider error family."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (FutureTimeoutError, TimeoutError)) or "timeout" in type(exc).__name__.lower():
        return ProviderTimeoutError(f"Provider call timed out: {type(exc).__name__}")

    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(status, int):
        if status in (401, 403):
            return ProviderAuthError("Authentication with the model provider failed.", status)
        if status == 429:
            return ProviderRateLimitError("Rate limit exceeded.", retry_after_s=_retry_after_seconds(exc))
        if status >= 500:
            return ProviderUpstreamError("Upstream service error.", status=status)
        return ProviderUpstreamError(f"Request failed with status {status}.", status=status)

    if "connection" in type(exc).__name__.lower():
        return ProviderUpstreamError(f"Network error: {type(exc).__name__}")
    return ProviderUpstreamError(f"Unexpected provider failure: {type(exc).__name__}")


def completion_text(raw: Any) -> str:
    """Extracts the text of a chat message or a plain completion string."""
    content = getattr(raw, "content", raw)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        content = "".join(parts)
    return _THINK_RE.sub("", str(content or "")).strip()


def parse_json_object(text: str) -> Any:
    """Direct JSON parse first, then the outermost `{...}` block (fenced replies)."""
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError):
        pass
    match = _JSON_OBJECT_RE.search(text or "")
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    raise ValueError("no JSON object in completion")


def _reported_model(raw: Any, default: str) -> str:
    metadata = getattr(raw, "response_metadata", None) or {}
    return str(metadata.get("model_name") or metadata.get("model") or default)


class AnswerGenerator:
    def __init__(
        self,
        llm,
        *,
        model_name: str | None = None,
        timeout_s: float = PROVIDER_TIMEOUT_S,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.llm = llm
        self.model_name = model_name or provider_model_name()
        self.timeout_s = float(timeout_s)
        self._executor = executor or ThreadPoolExecutor(max_workers=API_WORKERS, thread_name_prefix="llm-call")

    def _invoke_with_timeout(self, chain, payload: dict[str, str]):
        future = self._executor.submit(chain.invoke, payload)
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeoutError as exc:
            # The worker thread is abandoned; nothing it returns later is used.
            future.cancel()
            raise ProviderTimeoutError(f"Request timed out after {self.timeout_s:.1f}s") from exc

    def generate(
        self,
        question: str,
        context: str,
        *,
        citations_required: bool = False,
        locale: str = "en",
    ) -> GenerationResult:
        chain = build_answer_prompt(locale) | self.llm
        payload = {
            "context": context,
            "question": question,
            "citation_rule": citation_rule(locale, citations_required),
        }

        start = time.perf_counter()
        try:
            raw = self._invoke_with_timeout(chain, payload)
        except Exception as exc:
            latency_ms = int((time.perf_counter() - start) * 1000)
            error = classify_provider_exception(exc)
            logger.warning(
                "answer_generation_provider_error",
                model=self.model_name,
                latency_ms=latency_ms,
                error_type=type(error).__name__,
                cause=type(exc).__name__,
            )
            return GenerationProviderError(error=error, model=self.model_name, latency_ms=latency_ms)

        latency_ms = int((time.perf_counter() - start) * 1000)
        model = _reported_model(raw, self.model_name)
        text = completion_text(raw)
        if not text:
            return GenerationProviderError(
                error=ProviderUpstreamError("Empty completion content"),
                model=model,
                latency_ms=latency_ms,
            )

        try:
            answer = AnswerPayload.model_validate(parse_json_object(text))
        except ValueError as exc:
            # pydantic.ValidationError is a ValueError subclass.
            issues = (
                [{"type": e["type"], "loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
                if isinstance(exc, ValidationError)
                else [{"type": "json_invalid", "loc": [], "msg": str(exc)}]
            )
            logger.warning(
                "answer_generation_schema_mismatch",
                model=model,
                latency_ms=latency_ms,
                content_chars=len(text),
                issue_count=len(issues),
            )
            return GenerationSchemaError(
                raw_snippet=text[:_RAW_SNIPPET_CHARS],
                issues=issues,
                model=model,
                latency_ms=latency_ms,
            )

        logger.info(
            "answer_generated",
            model=model,
            latency_ms=latency_ms,
            low_confidence=answer.low_confidence,
            answer_chars=len(answer.text),
        )
        return GenerationOk(answer=answer, model=model, latency_ms=latency_ms)
