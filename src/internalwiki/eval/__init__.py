"""Retrieval evaluation harness and benchmark."""

from .benchmark import RETRIEVAL_BENCHMARK_CASES
from .harness import (
    EvalConfigurationError,
    EvalRunRecorder,
    JsonEvalRunRecorder,
    MockedResponseExecutor,
    RetrievalEvalCase,
    RetrievalEvalCaseResult,
    RetrievalEvalRunResult,
    evaluate_case,
    run_retrieval_eval_benchmark,
    service_executor,
)

__all__ = [
    "RETRIEVAL_BENCHMARK_CASES",
    "EvalConfigurationError",
    "EvalRunRecorder",
    "JsonEvalRunRecorder",
    "MockedResponseExecutor",
    "RetrievalEvalCase",
    "RetrievalEvalCaseResult",
    "RetrievalEvalRunResult",
    "evaluate_case",
    "run_retrieval_eval_benchmark",
    "service_executor",
]
