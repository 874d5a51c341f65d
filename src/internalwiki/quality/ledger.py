"""Rolling pass-rate reporting for answer quality contract outcomes."""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Protocol, Sequence

import redis

from internalwiki.cache.client import CacheClient, RedisCacheClient
from internalwiki.metrics.observability import get_logger
from internalwiki.models import parse_timestamp, utc_now
from internalwiki.quality.contract import DIMENSIONS, AnswerQualityContractResult

LOGGER = get_logger("quality")

RETENTION_DAYS = 30


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: str
    organization_id: str
    recorded_at: str
    status: str
    dimensions: Mapping[str, str]
    reason_codes: Sequence[str] = field(default_factory=tuple)

    def to_json(self) -> str:
        return json.dumps(
            {
                "entry_id": self.entry_id,
                "organization_id": self.organization_id,
                "recorded_at": self.recorded_at,
                "status": self.status,
                "dimensions": dict(self.dimensions),
                "reason_codes": list(self.reason_codes),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> "LedgerEntry":
        payload = json.loads(raw)
        return cls(
            entry_id=payload["entry_id"],
            organization_id=payload["organization_id"],
            recorded_at=payload["recorded_at"],
            status=payload["status"],
            dimensions=dict(payload.get("dimensions") or {}),
            reason_codes=tuple(payload.get("reason_codes") or ()),
        )


@dataclass(frozen=True)
class DimensionSummary:
    passed: int
    blocked: int
    pass_rate: float


@dataclass(frozen=True)
class QualityContractSummary:
    organization_id: str
    window_days: int
    total: int
    passed: int
    blocked: int
    pass_rate: float
    dimensions: Mapping[str, DimensionSummary]
    latest_status: str | None
    top_reason_codes: Sequence[tuple[str, int]]
    generated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": self.organization_id,
            "window_days": self.window_days,
            "total": self.total,
            "passed": self.passed,
            "blocked": self.blocked,
            "pass_rate": self.pass_rate,
            "dimensions": {
                name: {"passed": item.passed, "blocked": item.blocked, "pass_rate": item.pass_rate}
                for name, item in self.dimensions.items()
            },
            "latest_status": self.latest_status,
            "top_reason_codes": [{"code": code, "count": count} for code, count in self.top_reason_codes],
            "generated_at": self.generated_at,
        }


def _pass_rate(passed: int, total: int) -> float:
    if total == 0:
        return 100.0
    return round(passed / total * 100, 2)


def summarize_entries(
    organization_id: str,
    entries: Sequence[LedgerEntry],
    window_days: int,
    now: datetime,
) -> QualityContractSummary:
    ordered = sorted(entries, key=lambda entry: entry.recorded_at)
    total = len(ordered)
    passed = sum(1 for entry in ordered if entry.status == "passed")
    dimensions: dict[str, DimensionSummary] = {}
    for name in DIMENSIONS:
        dimension_passed = sum(1 for entry in ordered if entry.dimensions.get(name) == "passed")
        dimensions[name] = DimensionSummary(
            passed=dimension_passed,
            blocked=total - dimension_passed,
            pass_rate=_pass_rate(dimension_passed, total),
        )
    counts: dict[str, int] = {}
    for entry in ordered:
        for code in entry.reason_codes:
            counts[code] = counts.get(code, 0) + 1
    top_codes = sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:5]
    return QualityContractSummary(
        organization_id=organization_id,
        window_days=window_days,
        total=total,
        passed=passed,
        blocked=total - passed,
        pass_rate=_pass_rate(passed, total),
        dimensions=dimensions,
        latest_status=ordered[-1].status if ordered else None,
        top_reason_codes=top_codes,
        generated_at=now.isoformat(),
    )


def _entry_for(organization_id: str, result: AnswerQualityContractResult, recorded_at: datetime) -> LedgerEntry:
    return LedgerEntry(
        entry_id=uuid.uuid4().hex,
        organization_id=organization_id,
        recorded_at=recorded_at.isoformat(),
        status=result.status,
        dimensions={name: dimension.status for name, dimension in result.dimensions.items()},
        reason_codes=tuple(result.reason_codes),
    )


def _recorded_after(entry: LedgerEntry, cutoff: datetime) -> bool:
    recorded = parse_timestamp(entry.recorded_at)
    return recorded is not None and recorded > cutoff


class QualityContractLedger(Protocol):
    """Stores contract outcomes and reports rolling pass rates."""

    def record(
        self,
        organization_id: str,
        result: AnswerQualityContractResult,
        recorded_at: datetime | None = None,
    ) -> LedgerEntry:
        """Persist one contract outcome."""

    def summary(self, organization_id: str, window_days: int = 7, now: datetime | None = None) -> QualityContractSummary:
        """Aggregate outcomes recorded within the trailing window."""


class InMemoryQualityContractLedger:
    """Thread-safe process-local ledger; entries older than RETENTION_DAYS are dropped on write."""

    def __init__(self) -> None:
        self._entries: dict[str, list[LedgerEntry]] = {}
        self._lock = threading.Lock()

    def record(
        self,
        organization_id: str,
        result: AnswerQualityContractResult,
        recorded_at: datetime | None = None,
    ) -> LedgerEntry:
        recorded_at = recorded_at or utc_now()
        entry = _entry_for(organization_id, result, recorded_at)
        cutoff = recorded_at - timedelta(days=RETENTION_DAYS)
        with self._lock:
            retained = [item for item in self._entries.get(organization_id, []) if _recorded_after(item, cutoff)]
            retained.append(entry)
            self._entries[organization_id] = retained
        return entry

    def summary(self, organization_id: str, window_days: int = 7, now: datetime | None = None) -> QualityContractSummary:
        now = now or utc_now()
        cutoff = now - timedelta(days=window_days)
        with self._lock:
            entries = list(self._entries.get(organization_id, []))
        in_window = []
        for entry in entries:
            recorded = parse_timestamp(entry.recorded_at)
            if recorded is not None and cutoff <= recorded <= now:
                in_window.append(entry)
        return summarize_entries(organization_id, in_window, window_days, now)


class RedisQualityContractLedger:
    """Ledger stored in one Redis sorted set per organisation, scored by epoch seconds."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "cache") -> None:
        self._client = client
        self._key_prefix = key_prefix

    def _key(self, organization_id: str) -> str:
        return f"{self._key_prefix}:quality_contract:{organization_id}"

    def record(
        self,
        organization_id: str,
        result: AnswerQualityContractResult,
        recorded_at: datetime | None = None,
    ) -> LedgerEntry:
        recorded_at = recorded_at or utc_now()
        entry = _entry_for(organization_id, result, recorded_at)
        key = self._key(organization_id)
        pipeline = self._client.pipeline()
        pipeline.zadd(key, {entry.to_json(): recorded_at.timestamp()})
        pipeline.zremrangebyscore(key, "-inf", (recorded_at - timedelta(days=RETENTION_DAYS)).timestamp())
        pipeline.execute()
        return entry

    def summary(self, organization_id: str, window_days: int = 7, now: datetime | None = None) -> QualityContractSummary:
        now = now or utc_now()
        cutoff = now - timedelta(days=window_days)
        raw_entries = self._client.zrangebyscore(self._key(organization_id), cutoff.timestamp(), now.timestamp())
        entries = [LedgerEntry.from_json(raw) for raw in raw_entries]
        return summarize_entries(organization_id, entries, window_days, now)


def build_quality_ledger(cache: CacheClient | None, *, key_prefix: str = "cache") -> QualityContractLedger:
    """Share the Redis connection when the cache is Redis-backed."""

    if isinstance(cache, RedisCacheClient):
        LOGGER.info("quality.ledger", backend="redis")
        return RedisQualityContractLedger(cache.client, key_prefix=key_prefix)
    return InMemoryQualityContractLedger()
