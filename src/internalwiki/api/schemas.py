"""Pydantic models for the InternalWiki API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from internalwiki.models import AssistantQueryRequest, DateRange, QueryFilters, is_absolute_http_url

ConnectorField = Literal[
    "google_drive",
    "google_docs",
    "slack",
    "microsoft_teams",
    "microsoft_sharepoint",
    "microsoft_onedrive",
]


class DateRangeModel(BaseModel):
    from_: Optional[str] = Field(default=None, alias="from", description="Inclusive lower bound (ISO-8601)")
    to: Optional[str] = Field(default=None, description="Inclusive upper bound (ISO-8601)")

    model_config = ConfigDict(populate_by_name=True)


class QueryFiltersModel(BaseModel):
    source_type: Optional[ConnectorField] = None
    date_range: Optional[DateRangeModel] = None
    author: Optional[str] = None
    min_source_score: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    document_ids: Optional[List[str]] = None

    def to_domain(self) -> QueryFilters:
        date_range = None
        if self.date_range is not None:
            date_range = DateRange(from_=self.date_range.from_, to=self.date_range.to)
        return QueryFilters(
            source_type=self.source_type,
            date_range=date_range,
            author=self.author,
            min_source_score=self.min_source_score,
            document_ids=tuple(self.document_ids) if self.document_ids else None,
        )


class AssistantQueryModel(BaseModel):
    query: str = Field(..., min_length=2, description="End-user question to answer")
    mode: Literal["ask", "summarize", "trace"] = "ask"
    allow_historical_evidence: bool = Field(
        default=False,
        description="Relax the freshness gate for questions about past decisions",
    )
    filters: Optional[QueryFiltersModel] = None

    def to_domain(self) -> AssistantQueryRequest:
        return AssistantQueryRequest(
            query=self.query,
            mode=self.mode,
            allow_historical_evidence=self.allow_historical_evidence,
            filters=self.filters.to_domain() if self.filters else QueryFilters(),
        )


class DocumentIndexModel(BaseModel):
    document_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    source_type: ConnectorField
    source_url: str = Field(..., min_length=1)
    updated_at: str = Field(..., description="Last modification time of the source (ISO-8601)")
    content: str = Field(..., min_length=1)
    author: Optional[str] = None
    summary: Optional[str] = None
    source_authority: float = Field(default=0.5, ge=0.0, le=1.0)
    author_authority: float = Field(default=0.5, ge=0.0, le=1.0)
    citation_coverage: float = Field(default=0.5, ge=0.0, le=1.0)
    principal_keys: List[str] = Field(
        default_factory=list,
        description="ACL principals allowed to read the source; empty means organization-wide",
    )
    source_format: Optional[str] = None
    source_external_id: Optional[str] = None
    canonical_source_url: Optional[str] = None
    sync_run_id: Optional[str] = None
    source_version_label: Optional[str] = None

    @field_validator("source_url", "canonical_source_url")
    @classmethod
    def _absolute_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_absolute_http_url(value):
            raise ValueError("must be an absolute http(s) URL")
        return value


class DocumentIndexResponse(BaseModel):
    document_id: str
    doc_version_id: str
    chunk_count: int = Field(..., ge=0)
    chunk_ids: List[str]
    source_score: int = Field(..., ge=0, le=100)
