"""Observability helpers for the evidence pipeline."""

from __future__ import annotations

import logging
from typing import Iterable

import structlog
from prometheus_client import Counter, Gauge, Histogram

_logger_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "internalwiki") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class PipelineMetrics:
    """Prometheus metrics for pipeline stages."""

    indexing_latency = Histogram(
        "internalwiki_indexing_duration_seconds",
        "Time spent chunking and indexing a document.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
    )
    indexed_chunks = Histogram(
        "internalwiki_indexed_chunk_count",
        "Chunks produced per indexed document.",
        buckets=(0, 1, 5, 10, 20, 40, 80),
    )
    retrieval_latency = Histogram(
        "internalwiki_retrieval_duration_seconds",
        "Time spent retrieving evidence chunks.",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0),
    )
    retrieved_chunk_count = Histogram(
        "internalwiki_retrieved_chunk_count",
        "Number of chunks returned by retrieval.",
        buckets=(0, 1, 2, 3, 5, 8, 13),
    )
    retrieval_fallbacks = Counter(
        "internalwiki_retrieval_fallback_total",
        "Retrievals that fell back to document summaries.",
    )
    combined_score = Histogram(
        "internalwiki_combined_score",
        "Fused hybrid score of retrieved chunks.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    generation_latency = Histogram(
        "internalwiki_generation_duration_seconds",
        "Time spent generating answers.",
        buckets=(0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0),
    )
    generation_failures = Counter(
        "internalwiki_generation_failures_total",
        "Provider calls rejected or failed.",
        ["provider"],
    )
    quality_contract_outcomes = Counter(
        "internalwiki_quality_contract_total",
        "Answer quality contract outcomes per dimension.",
        ["dimension", "status"],
    )
    eval_score = Gauge(
        "internalwiki_retrieval_eval_score_good_pct",
        "Latest retrieval benchmark good percentage.",
        ["organization_id"],
    )

    @classmethod
    def observe_indexing(cls, duration_seconds: float, chunk_count: int) -> None:
        cls.indexing_latency.observe(duration_seconds)
        cls.indexed_chunks.observe(chunk_count)

    @classmethod
    def observe_retrieval(
        cls,
        duration_seconds: float,
        chunk_count: int,
        scores: Iterable[float],
        *,
        fallback_used: bool = False,
    ) -> None:
        cls.retrieval_latency.observe(duration_seconds)
        cls.retrieved_chunk_count.observe(chunk_count)
        if fallback_used:
            cls.retrieval_fallbacks.inc()
        for score in scores:
            cls.combined_score.observe(min(1.0, max(0.0, score)))

    @classmethod
    def observe_generation(cls, duration_seconds: float) -> None:
        cls.generation_latency.observe(duration_seconds)

    @classmethod
    def observe_generation_failure(cls, provider: str) -> None:
        cls.generation_failures.labels(provider=provider).inc()

    @classmethod
    def observe_quality_contract(cls, overall: str, dimensions: dict[str, str]) -> None:
        cls.quality_contract_outcomes.labels(dimension="overall", status=overall).inc()
        for dimension, status in dimensions.items():
            cls.quality_contract_outcomes.labels(dimension=dimension, status=status).inc()


__all__ = [
    "PipelineMetrics",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_logger",
]
