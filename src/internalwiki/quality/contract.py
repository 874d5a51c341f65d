"""Answer quality contract: groundedness, freshness and permission safety gates."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal, Mapping, Sequence

from internalwiki.config import Settings
from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import Citation, parse_timestamp, utc_now

LOGGER = get_logger("quality")

CONTRACT_VERSION = "v1"

DimensionStatus = Literal["passed", "blocked"]
DIMENSIONS: tuple[str, ...] = ("groundedness", "freshness", "permission_safety")


@dataclass(frozen=True)
class GroundednessPolicy:
    require_citations: bool = True
    min_citation_count: int = 1
    min_citation_coverage: float = 0.8
    max_unsupported_claims: int = 0


@dataclass(frozen=True)
class FreshnessPolicy:
    window_days: int = 30
    min_fresh_citation_coverage: float = 0.8
    # Applied instead of the strict minimum when the caller allows historical evidence.
    historical_min_fresh_citation_coverage: float = 0.0


@dataclass(frozen=True)
class PermissionSafetyPolicy:
    mode: Literal["fail_closed"] = "fail_closed"


@dataclass(frozen=True)
class AnswerQualityPolicy:
    groundedness: GroundednessPolicy = field(default_factory=GroundednessPolicy)
    freshness: FreshnessPolicy = field(default_factory=FreshnessPolicy)
    permission_safety: PermissionSafetyPolicy = field(default_factory=PermissionSafetyPolicy)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnswerQualityPolicy":
        return cls(
            groundedness=GroundednessPolicy(
                min_citation_coverage=settings.quality_min_citation_coverage,
                max_unsupported_claims=settings.quality_max_unsupported_claims,
            ),
            freshness=FreshnessPolicy(
                window_days=settings.quality_freshness_window_days,
                min_fresh_citation_coverage=settings.quality_min_fresh_citation_coverage,
                historical_min_fresh_citation_coverage=settings.quality_historical_min_fresh_citation_coverage,
            ),
        )


@dataclass(frozen=True)
class QualityContractInput:
    """Everything the evaluator needs about one generated answer."""

    citations: Sequence[Citation]
    citation_coverage: float
    unsupported_claims: int
    candidate_count: int
    viewer_principal_keys: Sequence[str] | None
    citation_updated_at_by_chunk_id: Mapping[str, str | None] = field(default_factory=dict)
    citation_principal_keys_by_chunk_id: Mapping[str, Sequence[str]] = field(default_factory=dict)
    allow_historical_evidence: bool = False


@dataclass(frozen=True)
class DimensionResult:
    status: DimensionStatus
    reasons: Sequence[str]
    reason_codes: Sequence[str]
    metrics: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reasons": list(self.reasons),
            "reason_codes": list(self.reason_codes),
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class AnswerQualityContractResult:
    version: str
    status: DimensionStatus
    policy: AnswerQualityPolicy
    allow_historical_evidence: bool
    groundedness: DimensionResult
    freshness: DimensionResult
    permission_safety: DimensionResult

    @property
    def dimensions(self) -> dict[str, DimensionResult]:
        return {
            "groundedness": self.groundedness,
            "freshness": self.freshness,
            "permission_safety": self.permission_safety,
        }

    @property
    def reason_codes(self) -> list[str]:
        return [code for result in self.dimensions.values() for code in result.reason_codes]

    @property
    def reasons(self) -> list[str]:
        return [reason for result in self.dimensions.values() for reason in result.reasons]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "status": self.status,
            "policy": asdict(self.policy),
            "allow_historical_evidence": self.allow_historical_evidence,
            "dimensions": {name: result.to_dict() for name, result in self.dimensions.items()},
        }


def _status(reasons: Sequence[str]) -> DimensionStatus:
    return "passed" if not reasons else "blocked"


def _evaluate_groundedness(payload: QualityContractInput, policy: GroundednessPolicy) -> DimensionResult:
    reasons: list[str] = []
    codes: list[str] = []
    citation_count = len(payload.citations)
    if policy.require_citations and citation_count < max(1, policy.min_citation_count):
        reasons.append("Citations are required for every answer.")
        codes.append("groundedness.no_citations")
    if payload.citation_coverage < policy.min_citation_coverage:
        reasons.append(
            f"Citation coverage {payload.citation_coverage:.2f} is below {policy.min_citation_coverage:.2f}."
        )
        codes.append("groundedness.low_citation_coverage")
    if payload.unsupported_claims > policy.max_unsupported_claims:
        reasons.append(f"{payload.unsupported_claims} unsupported claim(s) detected.")
        codes.append("groundedness.unsupported_claims")
    return DimensionResult(
        status=_status(reasons),
        reasons=reasons,
        reason_codes=codes,
        metrics={
            "citation_count": citation_count,
            "citation_coverage": payload.citation_coverage,
            "unsupported_claims": payload.unsupported_claims,
        },
    )


def _evaluate_freshness(payload: QualityContractInput, policy: FreshnessPolicy, now: datetime) -> DimensionResult:
    window = timedelta(days=policy.window_days)
    fresh = 0
    stale = 0
    for citation in payload.citations:
        updated_at = parse_timestamp(payload.citation_updated_at_by_chunk_id.get(citation.chunk_id))
        if updated_at is not None and now - updated_at <= window:
            fresh += 1
        else:
            stale += 1

    citation_count = len(payload.citations)
    coverage = fresh / citation_count if citation_count else 0.0
    reasons: list[str] = []
    codes: list[str] = []
    if payload.allow_historical_evidence:
        minimum = policy.historical_min_fresh_citation_coverage
        if citation_count == 0:
            reasons.append("No evidence was cited for this answer.")
            codes.append("freshness.no_evidence")
        elif coverage < minimum:
            reasons.append(f"Fresh evidence coverage {coverage:.2f} is below {minimum:.2f}.")
            codes.append("freshness.low_fresh_coverage")
    else:
        minimum = policy.min_fresh_citation_coverage
        if citation_count == 0 or fresh == 0:
            reasons.append("No fresh evidence found within the freshness window.")
            codes.append("freshness.no_fresh_evidence")
        elif coverage < minimum:
            reasons.append(f"Fresh evidence coverage {coverage:.2f} is below {minimum:.2f}.")
            codes.append("freshness.low_fresh_coverage")
    return DimensionResult(
        status=_status(reasons),
        reasons=reasons,
        reason_codes=codes,
        metrics={
            "freshness_window_days": policy.window_days,
            "citation_count": citation_count,
            "fresh_citation_count": fresh,
            "stale_citation_count": stale,
            "citation_freshness_coverage": coverage,
            "min_fresh_citation_coverage": minimum,
        },
    )


def _evaluate_permission_safety(payload: QualityContractInput) -> DimensionResult:
    viewer_keys = {key for key in payload.viewer_principal_keys or () if key}
    citation_count = len(payload.citations)
    unresolved: list[str] = []
    denied: list[str] = []
    reasons: list[str] = []
    codes: list[str] = []
    if not viewer_keys:
        reasons.append("User identity mapping is required for permission-safe retrieval.")
        codes.append("permission.missing_viewer_identity")
    elif payload.candidate_count == 0 or citation_count == 0:
        reasons.append("No permitted evidence was available for this request.")
        codes.append("permission.no_permitted_evidence")
    else:
        for citation in payload.citations:
            acl = {key for key in payload.citation_principal_keys_by_chunk_id.get(citation.chunk_id) or () if key}
            if not acl:
                unresolved.append(citation.chunk_id)
            elif not acl & viewer_keys:
                denied.append(citation.chunk_id)
        if unresolved:
            reasons.append(f"{len(unresolved)} cited source(s) have no resolvable access control list.")
            codes.append("permission.unresolved_source_acl")
        if denied:
            reasons.append(f"{len(denied)} cited source(s) are not visible to the requesting user.")
            codes.append("permission.citation_not_permitted")
    return DimensionResult(
        status=_status(reasons),
        reasons=reasons,
        reason_codes=codes,
        metrics={
            "candidate_count": payload.candidate_count,
            "citation_count": citation_count,
            "has_viewer_principal_keys": bool(viewer_keys),
            "unresolved_citation_count": len(unresolved),
            "denied_citation_count": len(denied),
        },
    )


def evaluate_answer_quality(
    payload: QualityContractInput,
    policy: AnswerQualityPolicy | None = None,
    now: datetime | None = None,
) -> AnswerQualityContractResult:
    """Evaluate every dimension; the answer is blocked when any one of them blocks."""

    policy = policy or AnswerQualityPolicy()
    now = now or utc_now()
    groundedness = _evaluate_groundedness(payload, policy.groundedness)
    freshness = _evaluate_freshness(payload, policy.freshness, now)
    permission_safety = _evaluate_permission_safety(payload)
    blocked = any(result.status == "blocked" for result in (groundedness, freshness, permission_safety))
    result = AnswerQualityContractResult(
        version=CONTRACT_VERSION,
        status="blocked" if blocked else "passed",
        policy=policy,
        allow_historical_evidence=payload.allow_historical_evidence,
        groundedness=groundedness,
        freshness=freshness,
        permission_safety=permission_safety,
    )
    PipelineMetrics.observe_quality_contract(
        result.status,
        {name: dimension.status for name, dimension in result.dimensions.items()},
    )
    LOGGER.info("quality_contract.evaluated", status=result.status, reason_codes=result.reason_codes)
    return result
