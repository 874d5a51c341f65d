"""Shared domain models used across the evidence pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Sequence

import httpx

ConnectorType = Literal[
    "google_drive",
    "google_docs",
    "slack",
    "microsoft_teams",
    "microsoft_sharepoint",
    "microsoft_onedrive",
]
CONNECTOR_TYPES: tuple[str, ...] = (
    "google_drive",
    "google_docs",
    "slack",
    "microsoft_teams",
    "microsoft_sharepoint",
    "microsoft_onedrive",
)

AssistantMode = Literal["ask", "summarize", "trace"]
EvidenceReason = Literal["vector_similarity", "text_match", "trusted_source", "recency_boost"]


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are read as UTC, garbage returns None."""

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DocumentChunk:
    """Contiguous slice of an ingested document version.

    Chunks are immutable; a new document version produces new chunks with a
    new ``doc_version_id`` instead of editing these.
    """

    chunk_id: str
    doc_version_id: str
    text: str
    rank: int
    source_url: str
    source_score: float
    document_id: str | None = None
    document_title: str | None = None
    connector_type: str | None = None
    author: str | None = None
    updated_at: str | None = None
    source_format: str | None = None
    source_external_id: str | None = None
    canonical_source_url: str | None = None
    sync_run_id: str | None = None
    source_checksum: str | None = None
    source_version_label: str | None = None
    principal_keys: tuple[str, ...] = ()


@dataclass(frozen=True)
class RankedChunk(DocumentChunk):
    """Chunk annotated with the fused hybrid score."""

    combined_score: float = 0.0


@dataclass(frozen=True)
class Citation:
    """Pointer from an answer into a chunk; offsets are a half-open range."""

    chunk_id: str
    doc_version_id: str
    source_url: str
    start_offset: int
    end_offset: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_absolute_http_url(value: str) -> bool:
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError):
        return False
    return url.scheme in {"http", "https"} and bool(url.host)


def validate_citation(citation: Citation) -> bool:
    return (
        len(citation.chunk_id) > 0
        and len(citation.doc_version_id) > 0
        and citation.start_offset >= 0
        and citation.end_offset >= citation.start_offset
        and is_absolute_http_url(citation.source_url)
    )


def citation_coverage(claims: int, citations: Sequence[Citation]) -> float:
    """Fraction of claims that a valid citation can back, capped at 1."""

    if claims <= 0:
        return 1.0
    valid = sum(1 for citation in citations if validate_citation(citation))
    return min(1.0, valid / claims)


@dataclass(frozen=True)
class SourceTrustFactors:
    recency: float
    source_authority: float
    author_authority: float
    citation_coverage: float


@dataclass(frozen=True)
class SourceScore:
    """Composite 0-100 trust score; ``model_version`` keeps old totals interpretable."""

    total: int
    factors: SourceTrustFactors
    computed_at: str
    model_version: str


@dataclass(frozen=True)
class EvidenceProvenance:
    document_id: str | None = None
    document_title: str | None = None
    document_version_id: str | None = None
    source_external_id: str | None = None
    source_format: str | None = None
    canonical_source_url: str | None = None
    author: str | None = None
    last_updated_at: str | None = None
    sync_run_id: str | None = None
    checksum: str | None = None


@dataclass(frozen=True)
class EvidenceItem:
    """Response-facing wrapper around a chunk, its citation and relevance."""

    id: str
    title: str
    connector_type: str
    source_url: str
    excerpt: str
    source_score: float
    relevance: float
    reason: EvidenceReason
    citation: Citation
    provenance: EvidenceProvenance


@dataclass(frozen=True)
class DocumentRecord:
    """Indexed document version with the metadata used for trust scoring."""

    document_id: str
    organization_id: str
    title: str
    source_type: str
    source_url: str
    updated_at: str
    doc_version_id: str = ""
    author: str | None = None
    summary: str | None = None
    source_authority: float = 0.5
    author_authority: float = 0.5
    citation_coverage: float = 0.5
    principal_keys: tuple[str, ...] = ()
    source_format: str | None = None
    source_external_id: str | None = None
    sync_run_id: str | None = None
    source_checksum: str | None = None


@dataclass(frozen=True)
class ChunkSearchRecord:
    """Raw hybrid-search row returned by the backing store."""

    chunk_id: str
    doc_version_id: str
    text: str
    source_url: str
    source_score: float
    document_id: str | None = None
    document_title: str | None = None
    connector_type: str | None = None
    author: str | None = None
    updated_at: str | None = None
    source_format: str | None = None
    source_external_id: str | None = None
    canonical_source_url: str | None = None
    sync_run_id: str | None = None
    source_checksum: str | None = None
    source_version_label: str | None = None
    principal_keys: tuple[str, ...] = ()
    vector_rank: int | None = None
    lexical_rank: int | None = None
    vector_similarity: float = 0.0
    lexical_score: float = 0.0
    combined_score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["principal_keys"] = list(self.principal_keys)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChunkSearchRecord":
        data = dict(payload)
        data["principal_keys"] = tuple(data.get("principal_keys") or ())
        return cls(**data)


@dataclass(frozen=True)
class ContextChunk:
    """Minimal chunk view handed to the AI provider."""

    chunk_id: str
    doc_version_id: str
    source_url: str
    text: str
    source_score: float


@dataclass(frozen=True)
class GroundedAnswer:
    answer: str
    citations: Sequence[Citation]
    confidence: float
    source_score: float


@dataclass(frozen=True)
class AnswerClaim:
    id: str
    text: str
    order: int
    supported: bool
    citations: Sequence[Citation] = field(default_factory=tuple)


@dataclass(frozen=True)
class DateRange:
    from_: str | None = None
    to: str | None = None


@dataclass(frozen=True)
class QueryFilters:
    """Optional narrowing applied to both search legs and the fallback."""

    source_type: str | None = None
    date_range: DateRange | None = None
    author: str | None = None
    min_source_score: float | None = None
    document_ids: Sequence[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if self.document_ids is not None:
            payload["document_ids"] = list(self.document_ids)
        return payload


@dataclass(frozen=True)
class AssistantQueryRequest:
    query: str
    mode: AssistantMode = "ask"
    allow_historical_evidence: bool = False
    filters: QueryFilters = field(default_factory=QueryFilters)
