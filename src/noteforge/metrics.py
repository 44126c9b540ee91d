"""
Performance metrics collector for the NoteForge ask service.

Tracks: latency, throughput, memory usage, error codes, low-confidence answers
and retrieved chunks. Logs structured metrics to CACHE_DIR/metrics.jsonl.
"""
from __future__ import annotations

import json
import os
import threading
import time
from collections import Counter
from pathlib import Path

import psutil

from .config import METRICS_PATH
from .observability import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Thread-safe request metrics tracker with JSONL file logging."""

    def __init__(self, log_path: str | Path | None = METRICS_PATH):
        self._lock = threading.Lock()
        self._start_time: float = time.time()

        # Counters.
        self._total_requests: int = 0
        self._total_latency_ms: float = 0.0
        self._error_count: int = 0
        self._errors_by_code: Counter[str] = Counter()
        self._min_latency_ms: float = float("inf")
        self._max_latency_ms: float = 0.0
        self._low_confidence_count: int = 0
        self._generated_count: int = 0
        self._total_retrieved_chunks: int = 0

        # Logging.
        self._log_path = Path(log_path) if log_path else None
        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)

        # Process handle for memory tracking.
        self._process = psutil.Process(os.getpid())

    def record_request(
        self,
        latency_ms: float,
        success: bool,
        *,
        model: str = "",
        low_confidence: bool | None = None,
        generated: bool = False,
        retrieved_chunks: int | None = None,
        error_code: str | None = None,
    ) -> None:
        """Records a single request's outcome and appends to JSONL log."""
        entry = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "latency_ms": round(latency_ms, 2),
            "success": success,
            "model": model,
            "low_confidence": low_confidence,
            "generated": generated,
            "retrieved_chunks": retrieved_chunks,
            "error_code": error_code,
        }

        with self._lock:
            self._total_requests += 1
            self._total_latency_ms += latency_ms
            if latency_ms < self._min_latency_ms:
                self._min_latency_ms = latency_ms
            if latency_ms > self._max_latency_ms:
                self._max_latency_ms = latency_ms
            if not success:
                self._error_count += 1
                self._errors_by_code[error_code or "INTERNAL_ERROR"] += 1
            if low_confidence:
                self._low_confidence_count += 1
            if generated:
                self._generated_count += 1
            if retrieved_chunks:
                self._total_retrieved_chunks += int(retrieved_chunks)

        if self._log_path is None:
            return
        # Append to JSONL file outside the lock.
        try:
            with open(self._log_path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, ensure_ascii=True) + "\n")
        except OSError as exc:
            logger.warning("metrics_write_failed", path=str(self._log_path), error=str(exc))

    def get_summary(self) -> dict:
        """Returns comprehensive metrics snapshot."""
        with self._lock:
            total = self._total_requests
            avg_lat = (self._total_latency_ms / total) if total > 0 else 0.0
            min_lat = self._min_latency_ms if total > 0 else 0.0
            max_lat = self._max_latency_ms if total > 0 else 0.0
            errors = self._error_count
            errors_by_code = dict(self._errors_by_code)
            low_conf = self._low_confidence_count
            generated = self._generated_count
            chunks = self._total_retrieved_chunks

        # Throughput.
        uptime_s = time.time() - self._start_time
        throughput_rps = (total / uptime_s) if uptime_s > 0 else 0.0

        # Memory usage.
        mem_info = self._process.memory_info()
        mem_rss_mb = mem_info.rss / (1024 * 1024)
        mem_vms_mb = mem_info.vms / (1024 * 1024)

        return {
            "latency": {
                "avg_ms": round(avg_lat, 2),
                "min_ms": round(min_lat, 2),
                "max_ms": round(max_lat, 2),
            },
            "throughput": {
                "total_requests": total,
                "requests_per_second": round(throughput_rps, 4),
                "uptime_seconds": round(uptime_s, 1),
            },
            "memory": {
                "rss_mb": round(mem_rss_mb, 1),
                "vms_mb": round(mem_vms_mb, 1),
            },
            "answers": {
                "generated": generated,
                "low_confidence": low_conf,
                "retrieved_chunks": chunks,
            },
            "errors": {
                "count": errors,
                "by_code": errors_by_code,
                "rate_percent": round((errors / total * 100) if total > 0 else 0.0, 2),
            },
        }


# Module-level singleton used by the API server.
metrics_collector = MetricsCollector()
