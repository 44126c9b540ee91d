"""
Factories for the external model providers: the chat model that writes answers
and the embedding model shared with note indexing.
"""
import os

from langchain_groq import ChatGroq
from langchain_huggingface import HuggingFaceEmbeddings
from langchain_ollama import OllamaLLM

from .config import (
    API_MODEL_NAME,
    EMBEDDING_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LOCAL_MODEL_NAME,
    PROVIDER_TIMEOUT_S,
    RETRIEVAL_MODE,
    USE_API_LLM,
    console,
)
from .errors import ProviderConfigError
from .observability import get_logger

logger = get_logger(__name__)

_EMBEDDING_MODEL = None


def get_embeddings():
    global _EMBEDDING_MODEL
    if _EMBEDDING_MODEL is None:
        _EMBEDDING_MODEL = HuggingFaceEmbeddings(
            model_name=EMBEDDING_MODEL_NAME,
            encode_kwargs={"normalize_embeddings": True},
        )
        logger.info("embedding_model_loaded", model=EMBEDDING_MODEL_NAME)
    return _EMBEDDING_MODEL


def initialize_chat_model():
    """Initializes the answer model in JSON mode based on global configuration."""
    if USE_API_LLM:
        api_key = os.getenv("GROQ_API_KEY")
        if not api_key or not api_key.strip():
            raise ProviderConfigError("GROQ_API_KEY environment variable is not configured")
        console.print(f"[green]Using API Model: {API_MODEL_NAME}[/green]")
        # Retries belong to the caller; the provider client must not retry on its own.
        return ChatGroq(
            model=API_MODEL_NAME,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            api_key=api_key,
            timeout=PROVIDER_TIMEOUT_S,
            max_retries=0,
            model_kwargs={"response_format": {"type": "json_object"}},
        )
    console.print(f"[green]Using Local Model: {LOCAL_MODEL_NAME}[/green]")
    return OllamaLLM(
        model=LOCAL_MODEL_NAME,
        temperature=LLM_TEMPERATURE,
        num_predict=LLM_MAX_TOKENS,
        format="json",
        client_kwargs={"timeout": PROVIDER_TIMEOUT_S},
    )


def build_default_service(*, retrieval_mode: str = RETRIEVAL_MODE, db_path=None):
    """Wires the SQLite library store, the query log and the configured providers."""
    from .answer_generator import AnswerGenerator
    from .ask_service import AskService
    from .note_store import SqliteNoteStore
    from .query_log import QueryLogEmitter, SqliteQueryLog
    from .similarity import SimilarityRanker

    store = SqliteNoteStore(db_path)
    query_log = QueryLogEmitter(SqliteQueryLog(db_path))
    generator = AnswerGenerator(initialize_chat_model())
    ranker = SimilarityRanker(get_embeddings()) if retrieval_mode == "rag" else None
    logger.info("ask_service_ready", retrieval_mode=retrieval_mode, model=generator.model_name)
    return AskService(
        repository=store,
        generator=generator,
        query_log=query_log,
        ranker=ranker,
        retrieval_mode=retrieval_mode,
    )
