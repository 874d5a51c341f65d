"""Assemble response-facing evidence items from ranked chunks."""

from __future__ import annotations

from typing import Sequence

from internalwiki.models import Citation, DocumentChunk, EvidenceItem, EvidenceProvenance, EvidenceReason

CITATION_SPAN = 220
EXCERPT_PADDING = 90

_POSITIONAL_REASONS: tuple[EvidenceReason, ...] = ("vector_similarity", "text_match", "trusted_source")

_URL_CONNECTORS = (
    ("slack.com", "slack"),
    ("teams.microsoft.com", "microsoft_teams"),
    ("sharepoint.com", "microsoft_sharepoint"),
    ("onedrive.live.com", "microsoft_onedrive"),
    ("docs.google.com/document", "google_docs"),
)


def map_chunk_to_citation(chunk: DocumentChunk) -> Citation:
    return Citation(
        chunk_id=chunk.chunk_id,
        doc_version_id=chunk.doc_version_id,
        source_url=chunk.source_url,
        start_offset=0,
        end_offset=min(len(chunk.text), CITATION_SPAN),
    )


def connector_from_source_url(source_url: str) -> str:
    for needle, connector in _URL_CONNECTORS:
        if needle in source_url:
            return connector
    return "google_drive"


def _title_for(chunk: DocumentChunk) -> str:
    if chunk.document_title:
        return chunk.document_title
    return chunk.doc_version_id.replace("-v1", "", 1).replace("-", " ")


def _reason_for(index: int) -> EvidenceReason:
    # Positional label only; it does not inspect the underlying scores.
    if index < len(_POSITIONAL_REASONS):
        return _POSITIONAL_REASONS[index]
    return "recency_boost"


def build_evidence_items(chunks: Sequence[DocumentChunk]) -> list[EvidenceItem]:
    items: list[EvidenceItem] = []
    for index, chunk in enumerate(chunks):
        citation = map_chunk_to_citation(chunk)
        excerpt_start = max(0, citation.start_offset - EXCERPT_PADDING)
        excerpt_end = min(len(chunk.text), citation.end_offset + EXCERPT_PADDING)
        items.append(
            EvidenceItem(
                id=f"source-{chunk.chunk_id}",
                title=_title_for(chunk),
                connector_type=chunk.connector_type or connector_from_source_url(chunk.source_url),
                source_url=chunk.source_url,
                excerpt=chunk.text[excerpt_start:excerpt_end],
                source_score=chunk.source_score,
                relevance=max(0.1, 1 - index * 0.15),
                reason=_reason_for(index),
                citation=citation,
                provenance=EvidenceProvenance(
                    document_id=chunk.document_id,
                    document_title=chunk.document_title,
                    document_version_id=chunk.doc_version_id,
                    source_external_id=chunk.source_external_id,
                    source_format=chunk.source_format,
                    canonical_source_url=chunk.canonical_source_url or chunk.source_url,
                    author=chunk.author,
                    last_updated_at=chunk.updated_at,
                    sync_run_id=chunk.sync_run_id,
                    checksum=chunk.source_checksum,
                ),
            )
        )
    items.sort(key=lambda item: item.relevance, reverse=True)
    return items
