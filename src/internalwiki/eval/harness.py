"""Retrieval evaluation harness used as a CI regression gate."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Literal, Mapping, Protocol, Sequence

from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import AssistantMode, AssistantQueryRequest, QueryFilters, utc_now
from internalwiki.services.generation import GenerationError
from internalwiki.services.query import AssistantQueryResponse, AssistantQueryService

LOGGER = get_logger("eval")

DEFAULT_THRESHOLD_GOOD_PCT = 75.0
MIN_CITATION_COVERAGE = 0.8

Verdict = Literal["good", "bad", "unknown"]
QueryExecutor = Callable[[str, AssistantQueryRequest], AssistantQueryResponse]


class EvalConfigurationError(RuntimeError):
    """Raised when the harness itself is misconfigured, as opposed to a failing case."""


@dataclass(frozen=True)
class RetrievalEvalCase:
    id: str
    query: str
    mode: AssistantMode = "ask"
    source_type: str | None = None
    min_citation_count: int = 1
    expected_any_citation_chunk_ids: Sequence[str] = field(default_factory=tuple)
    expected_any_answer_phrases: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RetrievalEvalCase":
        if not payload.get("id") or not payload.get("query"):
            raise EvalConfigurationError("Eval cases need an id and a query")
        return cls(
            id=str(payload["id"]),
            query=str(payload["query"]),
            mode=payload.get("mode", "ask"),
            source_type=payload.get("source_type"),
            min_citation_count=int(payload.get("min_citation_count", 1)),
            expected_any_citation_chunk_ids=tuple(payload.get("expected_any_citation_chunk_ids") or ()),
            expected_any_answer_phrases=tuple(payload.get("expected_any_answer_phrases") or ()),
        )

    def to_request(self) -> AssistantQueryRequest:
        return AssistantQueryRequest(
            query=self.query,
            mode=self.mode,
            filters=QueryFilters(source_type=self.source_type),
        )


@dataclass(frozen=True)
class RetrievalEvalCaseResult:
    id: str
    query: str
    verdict: Verdict
    reasons: Sequence[str]
    citation_chunk_ids: Sequence[str]
    citation_coverage: float
    confidence: float
    source_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query,
            "verdict": self.verdict,
            "reasons": list(self.reasons),
            "citation_chunk_ids": list(self.citation_chunk_ids),
            "citation_coverage": self.citation_coverage,
            "confidence": self.confidence,
            "source_score": self.source_score,
        }


@dataclass(frozen=True)
class RetrievalEvalRunResult:
    organization_id: str
    threshold_good_pct: float
    total_cases: int
    good_cases: int
    bad_cases: int
    unknown_cases: int
    score_good_pct: float
    pass_threshold: bool
    results: Sequence[RetrievalEvalCaseResult]
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "organization_id": self.organization_id,
            "threshold_good_pct": self.threshold_good_pct,
            "total_cases": self.total_cases,
            "good_cases": self.good_cases,
            "bad_cases": self.bad_cases,
            "unknown_cases": self.unknown_cases,
            "score_good_pct": self.score_good_pct,
            "pass_threshold": self.pass_threshold,
            "results": [result.to_dict() for result in self.results],
        }


class EvalRunRecorder(Protocol):
    """Persists finished runs for reporting; returns the run id."""

    def record(self, run: RetrievalEvalRunResult, *, actor_id: str | None = None) -> str:
        """Store the run."""


class JsonEvalRunRecorder:
    """Writes one JSON document per run into ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    def record(self, run: RetrievalEvalRunResult, *, actor_id: str | None = None) -> str:
        run_id = run.run_id or uuid.uuid4().hex
        self._directory.mkdir(parents=True, exist_ok=True)
        payload = replace(run, run_id=run_id).to_dict()
        payload["recorded_at"] = utc_now().isoformat()
        payload["actor_id"] = actor_id
        path = self._directory / f"{run_id}.json"
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        LOGGER.info("eval.run_recorded", run_id=run_id, path=str(path))
        return run_id


class MockedResponseExecutor:
    """Returns canned responses keyed by query text."""

    def __init__(self, responses: Mapping[str, AssistantQueryResponse]) -> None:
        self._responses = dict(responses)

    def __call__(self, organization_id: str, request: AssistantQueryRequest) -> AssistantQueryResponse:
        try:
            return self._responses[request.query]
        except KeyError as exc:
            raise EvalConfigurationError(f"No mocked response configured for query: {request.query!r}") from exc


def service_executor(
    service: AssistantQueryService,
    *,
    viewer_principal_keys: Sequence[str] | None = None,
) -> QueryExecutor:
    """Adapt the assistant pipeline into a harness executor."""

    def execute(organization_id: str, request: AssistantQueryRequest) -> AssistantQueryResponse:
        return service.answer(organization_id, request, viewer_principal_keys=viewer_principal_keys)

    return execute


def _lower_set(items: Iterable[str]) -> set[str]:
    return {item.strip().lower() for item in items if item and item.strip()}


def evaluate_case(case: RetrievalEvalCase, response: AssistantQueryResponse) -> RetrievalEvalCaseResult:
    reasons: list[str] = []
    citation_ids = [citation.chunk_id for citation in response.citations]
    coverage = response.grounding.citation_coverage

    if len(citation_ids) < case.min_citation_count:
        reasons.append(f"citations below minimum ({len(citation_ids)}/{case.min_citation_count})")
    if coverage < MIN_CITATION_COVERAGE:
        reasons.append(f"citation coverage below {MIN_CITATION_COVERAGE} ({coverage:.2f})")
    if case.expected_any_citation_chunk_ids:
        expected = _lower_set(case.expected_any_citation_chunk_ids)
        if not any(chunk_id.lower() in expected for chunk_id in citation_ids):
            reasons.append("expected citation chunk not present")
    if case.expected_any_answer_phrases:
        answer = response.answer.lower()
        if not any(phrase.lower() in answer for phrase in case.expected_any_answer_phrases):
            reasons.append("expected answer phrase not present")

    return RetrievalEvalCaseResult(
        id=case.id,
        query=case.query,
        verdict="good" if not reasons else "bad",
        reasons=reasons,
        citation_chunk_ids=citation_ids,
        citation_coverage=coverage,
        confidence=response.confidence,
        source_score=response.source_score,
    )


def run_retrieval_eval_benchmark(
    organization_id: str,
    cases: Sequence[RetrievalEvalCase],
    *,
    threshold_good_pct: float = DEFAULT_THRESHOLD_GOOD_PCT,
    execute_query: QueryExecutor | None = None,
    recorder: EvalRunRecorder | None = None,
    actor_id: str | None = None,
) -> RetrievalEvalRunResult:
    """Run every case sequentially and compare the good percentage to the threshold.

    A provider failure yields an ``unknown`` verdict for that case; a missing
    mocked response is a configuration error and propagates.
    """

    if execute_query is None:
        raise EvalConfigurationError("execute_query is required to run the benchmark")

    results: list[RetrievalEvalCaseResult] = []
    for case in cases:
        try:
            response = execute_query(organization_id, case.to_request())
        except GenerationError as exc:
            LOGGER.warning("eval.case_unknown", case_id=case.id, detail=str(exc))
            results.append(
                RetrievalEvalCaseResult(
                    id=case.id,
                    query=case.query,
                    verdict="unknown",
                    reasons=[f"generation failed: {exc}"],
                    citation_chunk_ids=[],
                    citation_coverage=0.0,
                    confidence=0.0,
                    source_score=0.0,
                )
            )
            continue
        results.append(evaluate_case(case, response))

    total = len(results)
    good = sum(1 for result in results if result.verdict == "good")
    bad = sum(1 for result in results if result.verdict == "bad")
    score = (good / total) * 100 if total else 0.0
    run = RetrievalEvalRunResult(
        organization_id=organization_id,
        threshold_good_pct=threshold_good_pct,
        total_cases=total,
        good_cases=good,
        bad_cases=bad,
        unknown_cases=total - good - bad,
        score_good_pct=score,
        pass_threshold=score >= threshold_good_pct,
        results=results,
    )
    if recorder is not None:
        run = replace(run, run_id=recorder.record(run, actor_id=actor_id))

    PipelineMetrics.eval_score.labels(organization_id=organization_id).set(score)
    LOGGER.info(
        "eval.complete",
        organization_id=organization_id,
        total_cases=total,
        good_cases=good,
        score_good_pct=score,
        pass_threshold=run.pass_threshold,
        run_id=run.run_id,
    )
    return run
