"""Time-decayed source trust scoring."""

from __future__ import annotations

import math
from datetime import datetime

from internalwiki.models import SourceScore, SourceTrustFactors, parse_timestamp, utc_now

SCORE_MODEL_VERSION = "v1.0.0"

SCORE_WEIGHTS = {
    "recency": 0.35,
    "source_authority": 0.25,
    "author_authority": 0.20,
    "citation_coverage": 0.20,
}

RECENCY_HALF_LIFE_HOURS = 24 * 14


def _clamp(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return float(value)


def recency_decay(updated_at_iso: str | None, now: datetime | None = None) -> float:
    """Exponential decay with a 14 day half-life; unparseable dates score 0."""

    updated_at = parse_timestamp(updated_at_iso)
    if updated_at is None:
        return 0.0
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=updated_at.tzinfo)
    age_hours = max(0.0, (now - updated_at).total_seconds() / 3600.0)
    return _clamp(math.exp((-math.log(2) * age_hours) / RECENCY_HALF_LIFE_HOURS))


def compute_source_score(
    updated_at: str | None,
    source_authority: float,
    author_authority: float,
    citation_coverage: float,
    now: datetime | None = None,
) -> SourceScore:
    factors = SourceTrustFactors(
        recency=recency_decay(updated_at, now),
        source_authority=_clamp(source_authority),
        author_authority=_clamp(author_authority),
        citation_coverage=_clamp(citation_coverage),
    )
    weighted = (
        factors.recency * SCORE_WEIGHTS["recency"]
        + factors.source_authority * SCORE_WEIGHTS["source_authority"]
        + factors.author_authority * SCORE_WEIGHTS["author_authority"]
        + factors.citation_coverage * SCORE_WEIGHTS["citation_coverage"]
    )
    return SourceScore(
        total=int(math.floor(_clamp(weighted) * 100 + 0.5)),
        factors=factors,
        computed_at=utc_now().isoformat(),
        model_version=SCORE_MODEL_VERSION,
    )
