from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Callable, Sequence

import chromadb
import pytest

from internalwiki.embeddings.service import EmbeddingConfig, HashEmbeddingBackend
from internalwiki.embeddings.store import ChromaEmbeddingStore
from internalwiki.models import Citation, DocumentChunk, utc_now
from internalwiki.quality.contract import QualityContractInput, evaluate_answer_quality
from internalwiki.services.grounding import Traceability
from internalwiki.services.query import (
    AssistantQueryResponse,
    GroundingMeta,
    PermissionsMeta,
    Timings,
    Verification,
)


def recent(days: int = 1) -> str:
    return (utc_now() - timedelta(days=days)).isoformat()


@pytest.fixture()
def embedding_backend() -> HashEmbeddingBackend:
    return HashEmbeddingBackend(EmbeddingConfig(dim=64))


@pytest.fixture()
def store(embedding_backend: HashEmbeddingBackend) -> ChromaEmbeddingStore:
    # EphemeralClient instances share one in-process system, so isolate by collection name.
    name = f"test-{uuid.uuid4().hex[:12]}"
    return ChromaEmbeddingStore(embedding_backend, collection_name=name, client=chromadb.EphemeralClient())


@pytest.fixture()
def make_chunk() -> Callable[..., DocumentChunk]:
    def factory(
        chunk_id: str,
        text: str,
        *,
        rank: int = 0,
        source_score: float = 80.0,
        updated_at: str | None = None,
        principal_keys: Sequence[str] = ("org:acme",),
        doc_version_id: str | None = None,
        source_url: str | None = None,
    ) -> DocumentChunk:
        return DocumentChunk(
            chunk_id=chunk_id,
            doc_version_id=doc_version_id or f"{chunk_id}-v1",
            text=text,
            rank=rank,
            source_url=source_url or f"https://drive.google.com/file/{chunk_id}",
            source_score=source_score,
            document_id=chunk_id.split("-")[0],
            document_title=f"Document {chunk_id}",
            connector_type="google_drive",
            author="dana",
            updated_at=updated_at or recent(),
            principal_keys=tuple(principal_keys),
        )

    return factory


@pytest.fixture()
def make_response() -> Callable[..., AssistantQueryResponse]:
    """Build a minimal assistant response with the given answer, citations and coverage."""

    def factory(
        answer: str,
        chunk_ids: Sequence[str] = ("c1",),
        *,
        coverage: float = 1.0,
        confidence: float = 0.8,
        source_score: float = 82.0,
    ) -> AssistantQueryResponse:
        citations = [
            Citation(
                chunk_id=chunk_id,
                doc_version_id=f"{chunk_id}-v1",
                source_url=f"https://drive.google.com/file/{chunk_id}",
                start_offset=0,
                end_offset=40,
            )
            for chunk_id in chunk_ids
        ]
        contract = evaluate_answer_quality(
            QualityContractInput(
                citations=citations,
                citation_coverage=coverage,
                unsupported_claims=0,
                candidate_count=len(citations),
                viewer_principal_keys=["org:acme"],
                citation_updated_at_by_chunk_id={chunk_id: recent() for chunk_id in chunk_ids},
                citation_principal_keys_by_chunk_id={chunk_id: ("org:acme",) for chunk_id in chunk_ids},
            )
        )
        return AssistantQueryResponse(
            answer=answer,
            confidence=confidence,
            source_score=source_score,
            citations=citations,
            claims=[],
            sources=[],
            grounding=GroundingMeta(citation_coverage=coverage, unsupported_claim_count=0, retrieval_score=0.5),
            traceability=Traceability(coverage=coverage, missing_author_count=0, missing_date_count=0),
            timings=Timings(retrieval_ms=1, generation_ms=1),
            verification=Verification(
                status=contract.status,
                reasons=contract.reasons,
                reason_codes=contract.reason_codes,
                citation_coverage=coverage,
                unsupported_claims=0,
            ),
            permissions=PermissionsMeta(filtered_out_count=0),
            quality_contract=contract,
            mode="ask",
            model="mock",
        )

    return factory
