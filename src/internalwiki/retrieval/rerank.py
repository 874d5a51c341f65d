"""Hybrid lexical/semantic re-ranking with source trust."""

from __future__ import annotations

from dataclasses import fields
from typing import Sequence

from internalwiki.models import DocumentChunk, RankedChunk

LEXICAL_WEIGHT = 0.45
SEMANTIC_WEIGHT = 0.55
RELEVANCE_WEIGHT = 0.7
TRUST_WEIGHT = 0.3
_NORMALIZATION_FLOOR = 0.0001


def _chunk_fields(chunk: DocumentChunk) -> dict[str, object]:
    return {item.name: getattr(chunk, item.name) for item in fields(DocumentChunk)}


def _normalize(scores: Sequence[float]) -> list[float]:
    cleaned = [max(0.0, float(score)) for score in scores]
    ceiling = max([*cleaned, _NORMALIZATION_FLOOR])
    return [score / ceiling for score in cleaned]


def rerank_hybrid(
    chunks: Sequence[DocumentChunk],
    lexical_scores: Sequence[float],
    semantic_scores: Sequence[float],
    limit: int | None = None,
) -> list[RankedChunk]:
    """Blend normalised lexical and semantic scores with source trust.

    Ties on the combined score keep the incoming ``rank`` order and then sort
    by ``chunk_id`` so the output is deterministic. ``limit=None`` keeps every
    chunk.
    """

    if len(chunks) != len(lexical_scores) or len(chunks) != len(semantic_scores):
        raise ValueError("Score and chunk arrays must align")

    lexical = _normalize(lexical_scores)
    semantic = _normalize(semantic_scores)
    ranked: list[RankedChunk] = []
    for chunk, lexical_score, semantic_score in zip(chunks, lexical, semantic):
        relevance = lexical_score * LEXICAL_WEIGHT + semantic_score * SEMANTIC_WEIGHT
        trust = min(1.0, max(0.0, chunk.source_score / 100))
        ranked.append(RankedChunk(**_chunk_fields(chunk), combined_score=relevance * RELEVANCE_WEIGHT + trust * TRUST_WEIGHT))

    ranked.sort(key=lambda item: (-item.combined_score, item.rank, item.chunk_id))
    if limit is not None:
        return ranked[: max(0, limit)]
    return ranked
