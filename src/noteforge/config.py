# /noteforge/config.py
"""
Centralized configuration for the NoteForge ask service.
Includes model names, retrieval tuning, budgets, paths and provider timeouts.
"""
import functools
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = str(os.getenv(name, default) or "").strip().lower()
    return raw if raw in choices else default


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Provider Toggles ---
USE_API_LLM = _env_bool("USE_API_LLM", True)               # True for Groq API, False for local Ollama
RETRIEVAL_MODE = _env_choice("RETRIEVAL_MODE", "simple", ("simple", "rag"))

# --- Model Names ---
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")   # Local model to use with Ollama
API_MODEL_NAME = os.getenv("API_MODEL_NAME", "llama-3.1-8b-instant")  # API model to use with Groq
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")

# --- Generation Parameters ---
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.2, minimum=0.0)
LLM_MAX_TOKENS = _env_int("LLM_MAX_TOKENS", 800, minimum=16)
PROVIDER_TIMEOUT_S = _env_float("PROVIDER_TIMEOUT_S", 8.0, minimum=0.1)

# --- Request Limits ---
QUERY_MAX_CHARS = _env_int("QUERY_MAX_CHARS", 500, minimum=1)
NOTE_MAX_CHARS = _env_int("NOTE_MAX_CHARS", 10_000, minimum=1)

# --- Retrieval / Context Tuning ---
# One page of notes (100) is the most a single prompt ever sees.
MAX_CONTEXT_NOTES = _env_int("MAX_CONTEXT_NOTES", 100, minimum=1)
CONTEXT_CHAR_BUDGET = _env_int("CONTEXT_CHAR_BUDGET", 24_000, minimum=256)
MATCH_THRESHOLD = _env_float("MATCH_THRESHOLD", 0.5, minimum=-1.0)
MATCH_COUNT = _env_int("MATCH_COUNT", 8, minimum=1)
MATCH_COUNT_MAX = 50

# --- Worker Pools ---
QUERY_LOG_WORKERS = _env_int("QUERY_LOG_WORKERS", 2, minimum=1)
API_WORKERS = _env_int("API_WORKERS", 8, minimum=1)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/noteforge/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_DATA_DIR = _BASE_DIR / "data"

DB_PATH = Path(os.getenv("DB_PATH", str(_DATA_DIR / "notes.sqlite")))
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(_DATA_DIR / "runtime_cache")))
METRICS_PATH = CACHE_DIR / "metrics.jsonl"

# --- Create necessary directories ---
CACHE_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(CACHE_DIR / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
configure_logging(LOG_PATH, LOG_LEVEL)


@functools.cache
def provider_model_name() -> str:
    """Model identifier reported in usage metadata for the configured provider."""
    return API_MODEL_NAME if USE_API_LLM else LOCAL_MODEL_NAME
