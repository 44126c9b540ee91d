"""Cosine-similarity ranking of note chunks against an embedded question."""
from __future__ import annotations

from typing import Sequence

import numpy as np
from langchain_core.embeddings import Embeddings

from .errors import InvalidRequestError
from .models import NoteChunk, RankedChunk
from .observability import get_logger

logger = get_logger(__name__)


def cosine_similarities(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Row-wise cosine similarity; rows (or a query) with zero norm score 0.0."""
    query_norm = float(np.linalg.norm(query_vector))
    row_norms = np.linalg.norm(matrix, axis=1)
    if query_norm == 0.0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    denom = row_norms * query_norm
    dots = matrix @ query_vector
    scores = np.divide(dots, denom, out=np.zeros_like(dots, dtype=np.float64), where=denom > 0)
    return np.clip(scores, -1.0, 1.0)


class SimilarityRanker:
    """
    Scores candidate chunks against the question with the indexing embedder.

    Ranking is a stable descending sort, so equal scores keep candidate order,
    then truncation to `top_k`, then removal of scores below `threshold`.
    """

    def __init__(self, embeddings: Embeddings):
        self.embeddings = embeddings

    def embed_query(self, query_text: str) -> np.ndarray:
        return np.asarray(self.embeddings.embed_query(query_text), dtype=np.float64)

    def rank(
        self,
        query_text: str,
        candidates: Sequence[NoteChunk],
        threshold: float,
        top_k: int,
    ) -> list[RankedChunk]:
        if int(top_k) < 1:
            raise InvalidRequestError("top_k must be at least 1", details={"top_k": top_k})
        if not candidates:
            return []

        query_vector = self.embed_query(query_text)
        usable = [chunk for chunk in candidates if len(chunk.embedding) == query_vector.shape[0]]
        if len(usable) != len(candidates):
            logger.warning(
                "similarity_dimension_mismatch",
                expected=int(query_vector.shape[0]),
                skipped=len(candidates) - len(usable),
            )
        if not usable:
            return []

        matrix = np.asarray([chunk.embedding for chunk in usable], dtype=np.float64)
        scores = cosine_similarities(query_vector, matrix)

        order = np.argsort(-scores, kind="stable")[: int(top_k)]
        ranked = [
            RankedChunk(chunk=usable[int(i)], similarity=float(scores[int(i)]))
            for i in order
            if float(scores[int(i)]) >= float(threshold)
        ]
        logger.info(
            "similarity_ranked",
            candidates=len(usable),
            passed=len(ranked),
            top_k=int(top_k),
            threshold=float(threshold),
        )
        return ranked
