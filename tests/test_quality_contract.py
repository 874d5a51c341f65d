from __future__ import annotations

from datetime import datetime, timedelta, timezone

from internalwiki.models import Citation
from internalwiki.quality.contract import (
    AnswerQualityPolicy,
    FreshnessPolicy,
    QualityContractInput,
    evaluate_answer_quality,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)
FRESH = (NOW - timedelta(days=2)).isoformat()
STALE = (NOW - timedelta(days=200)).isoformat()


def _citation(chunk_id: str) -> Citation:
    return Citation(chunk_id, f"{chunk_id}-v1", f"https://drive.google.com/file/{chunk_id}", 0, 20)


def _input(**overrides) -> QualityContractInput:
    values = dict(
        citations=[_citation("c1")],
        citation_coverage=1.0,
        unsupported_claims=0,
        candidate_count=1,
        viewer_principal_keys=["org:acme"],
        citation_updated_at_by_chunk_id={"c1": FRESH},
        citation_principal_keys_by_chunk_id={"c1": ("org:acme",)},
    )
    values.update(overrides)
    return QualityContractInput(**values)


def test_fully_supported_fresh_answer_passes():
    result = evaluate_answer_quality(_input(), now=NOW)
    assert result.status == "passed"
    assert result.reason_codes == []
    payload = result.to_dict()
    assert payload["version"] == "v1"
    assert set(payload["dimensions"]) == {"groundedness", "freshness", "permission_safety"}


def test_groundedness_blocks_missing_citations_and_low_coverage():
    result = evaluate_answer_quality(_input(citations=[], citation_coverage=0.5, unsupported_claims=2), now=NOW)
    assert result.status == "blocked"
    assert result.groundedness.reason_codes == [
        "groundedness.no_citations",
        "groundedness.low_citation_coverage",
        "groundedness.unsupported_claims",
    ]


def test_freshness_blocks_stale_evidence_unless_historical():
    stale = _input(citation_updated_at_by_chunk_id={"c1": STALE})
    strict = evaluate_answer_quality(stale, now=NOW)
    assert strict.freshness.reason_codes == ["freshness.no_fresh_evidence"]

    historical = evaluate_answer_quality(_input(citation_updated_at_by_chunk_id={"c1": STALE}, allow_historical_evidence=True), now=NOW)
    assert historical.freshness.status == "passed"
    assert historical.status == "passed"


def test_freshness_partial_coverage_and_no_evidence():
    mixed = _input(
        citations=[_citation("c1"), _citation("c2")],
        citation_updated_at_by_chunk_id={"c1": FRESH, "c2": STALE},
        citation_principal_keys_by_chunk_id={"c1": ("org:acme",), "c2": ("org:acme",)},
    )
    assert evaluate_answer_quality(mixed, now=NOW).freshness.reason_codes == ["freshness.low_fresh_coverage"]
    relaxed = AnswerQualityPolicy(freshness=FreshnessPolicy(min_fresh_citation_coverage=0.5))
    assert evaluate_answer_quality(mixed, relaxed, now=NOW).freshness.status == "passed"

    empty = evaluate_answer_quality(_input(citations=[], allow_historical_evidence=True), now=NOW)
    assert "freshness.no_evidence" in empty.freshness.reason_codes


def test_permission_safety_fails_closed():
    anonymous = evaluate_answer_quality(_input(viewer_principal_keys=None), now=NOW)
    assert anonymous.permission_safety.reason_codes == ["permission.missing_viewer_identity"]

    nothing = evaluate_answer_quality(_input(candidate_count=0, citations=[]), now=NOW)
    assert "permission.no_permitted_evidence" in nothing.permission_safety.reason_codes

    unresolved = evaluate_answer_quality(_input(citation_principal_keys_by_chunk_id={}), now=NOW)
    assert unresolved.permission_safety.reason_codes == ["permission.unresolved_source_acl"]

    denied = evaluate_answer_quality(_input(citation_principal_keys_by_chunk_id={"c1": ("group:finance",)}), now=NOW)
    assert denied.permission_safety.reason_codes == ["permission.citation_not_permitted"]
    assert denied.status == "blocked"
