from __future__ import annotations

from datetime import timedelta
from typing import Sequence

from internalwiki.cache import MemoryCacheClient
from internalwiki.embeddings.store import HybridSearchRequest, HybridSearchResult
from internalwiki.ingestion.service import DocumentIndexer, IndexDocumentRequest
from internalwiki.models import ChunkSearchRecord, DocumentRecord, QueryFilters, utc_now
from internalwiki.retrieval.service import ChunkRetriever, RetrievalConfig, RetrievalRequest, to_document_chunks


class RecordingStore:
    """Store stub returning fixed search rows and documents."""

    def __init__(self, records: Sequence[ChunkSearchRecord] = (), documents: Sequence[DocumentRecord] = ()) -> None:
        self.records = list(records)
        self.documents = list(documents)
        self.requests: list[HybridSearchRequest] = []
        self.document_calls = 0

    def hybrid_search(self, request: HybridSearchRequest) -> HybridSearchResult:
        self.requests.append(request)
        return HybridSearchResult(records=self.records, filtered_out_count=2)

    def list_documents(self, organization_id, *, limit=None, viewer_principal_keys=None, enforce_acl=True):
        self.document_calls += 1
        if not enforce_acl:
            return list(self.documents)
        return [doc for doc in self.documents if set(doc.principal_keys) & set(viewer_principal_keys or ())]


def _record(chunk_id: str, *, lexical: float, vector: float, score: float = 70.0) -> ChunkSearchRecord:
    return ChunkSearchRecord(
        chunk_id=chunk_id,
        doc_version_id=f"{chunk_id}-v1",
        text=f"text for {chunk_id}",
        source_url=f"https://drive.google.com/file/{chunk_id}",
        source_score=score,
        principal_keys=("org:acme",),
        lexical_score=lexical,
        vector_similarity=vector,
    )


def _document(doc_id: str, *, source_type: str = "google_drive", summary: str | None = "Summary text.") -> DocumentRecord:
    return DocumentRecord(
        document_id=doc_id,
        organization_id="acme",
        title=doc_id.title(),
        source_type=source_type,
        source_url=f"https://drive.google.com/file/{doc_id}",
        updated_at=utc_now().isoformat(),
        summary=summary,
        principal_keys=("org:acme",),
    )


def test_to_document_chunks_uses_row_order_as_rank():
    chunks = to_document_chunks([_record("a", lexical=0.1, vector=0.1), _record("b", lexical=0.2, vector=0.2)])
    assert [(chunk.chunk_id, chunk.rank) for chunk in chunks] == [("a", 0), ("b", 1)]
    assert chunks[0].principal_keys == ("org:acme",)


def test_retrieve_reranks_and_rewrites_ranks():
    store = RecordingStore([_record("weak", lexical=0.1, vector=0.1), _record("strong", lexical=0.9, vector=0.9)])
    retriever = ChunkRetriever(store, RetrievalConfig(limit=1))
    result = retriever.retrieve(
        RetrievalRequest(organization_id="acme", question="strong match", viewer_principal_keys=["org:acme"])
    )
    assert [chunk.chunk_id for chunk in result.chunks] == ["strong"]
    assert result.chunks[0].rank == 0
    assert result.filtered_out_count == 2
    assert result.fallback_used is False
    assert store.requests[0].limit == 2


def test_retrieve_passes_filters_to_store():
    store = RecordingStore([_record("a", lexical=0.5, vector=0.5)])
    filters = QueryFilters(source_type="slack", author="sam", min_source_score=40, document_ids=("a",))
    ChunkRetriever(store).retrieve(
        RetrievalRequest(organization_id="acme", question="q", filters=filters, viewer_principal_keys=["org:acme"])
    )
    sent = store.requests[0]
    assert sent.source_type == "slack"
    assert sent.author == "sam"
    assert sent.min_source_score == 40
    assert sent.document_ids == ["a"]
    assert sent.viewer_principal_keys == ["org:acme"]


def test_retrieve_falls_back_to_visible_document_summaries():
    documents = [_document("handbook"), _document("thread", source_type="slack", summary=None)]
    retriever = ChunkRetriever(RecordingStore(documents=documents))
    result = retriever.retrieve(
        RetrievalRequest(organization_id="acme", question="anything", viewer_principal_keys=["org:acme"])
    )
    assert result.fallback_used is True
    assert [chunk.chunk_id for chunk in result.chunks] == ["handbook-summary", "thread-summary"]
    assert result.chunks[0].doc_version_id == "handbook-v1"
    assert result.chunks[1].text == "Summary unavailable for Thread."

    filtered = retriever.retrieve(
        RetrievalRequest(
            organization_id="acme",
            question="anything",
            filters=QueryFilters(source_type="slack"),
            viewer_principal_keys=["org:acme"],
        )
    )
    assert [chunk.chunk_id for chunk in filtered.chunks] == ["thread-summary"]

    hidden = retriever.retrieve(RetrievalRequest(organization_id="acme", question="anything"))
    assert hidden.chunks == []
    assert hidden.fallback_used is False


def test_retrieve_caches_search_results_per_viewer():
    store = RecordingStore([_record("a", lexical=0.5, vector=0.5)])
    retriever = ChunkRetriever(store, cache=MemoryCacheClient())
    request = RetrievalRequest(organization_id="acme", question="q", viewer_principal_keys=["org:acme"])
    first = retriever.retrieve(request)
    second = retriever.retrieve(request)
    assert len(store.requests) == 1
    assert [chunk.chunk_id for chunk in second.chunks] == [chunk.chunk_id for chunk in first.chunks]
    assert second.chunks[0].principal_keys == ("org:acme",)

    retriever.retrieve(RetrievalRequest(organization_id="acme", question="q", viewer_principal_keys=["group:eng"]))
    assert len(store.requests) == 2


def test_cached_search_is_keyed_by_query_embedding():
    store = RecordingStore([_record("a", lexical=0.5, vector=0.5)])
    retriever = ChunkRetriever(store, cache=MemoryCacheClient())
    for embedding in ([1.0, 0.0], [1.0, 0.0], [0.0, 1.0]):
        retriever.retrieve(
            RetrievalRequest(
                organization_id="acme",
                question="q",
                query_embedding=embedding,
                viewer_principal_keys=["org:acme"],
            )
        )
    assert [request.query_embedding for request in store.requests] == [[1.0, 0.0], [0.0, 1.0]]


def test_fallback_documents_are_cached_and_filtered_per_viewer():
    restricted = DocumentRecord(
        document_id="payroll",
        organization_id="acme",
        title="Payroll",
        source_type="google_drive",
        source_url="https://drive.google.com/file/payroll",
        updated_at=utc_now().isoformat(),
        principal_keys=("group:finance",),
    )
    cache = MemoryCacheClient()
    store = RecordingStore(documents=[_document("handbook"), restricted])
    retriever = ChunkRetriever(store, cache=cache)

    org_view = retriever.retrieve(RetrievalRequest(organization_id="acme", question="x", viewer_principal_keys=["org:acme"]))
    finance_view = retriever.retrieve(
        RetrievalRequest(organization_id="acme", question="x", viewer_principal_keys=["group:finance"])
    )

    assert [chunk.chunk_id for chunk in org_view.chunks] == ["handbook-summary"]
    assert [chunk.chunk_id for chunk in finance_view.chunks] == ["payroll-summary"]
    assert finance_view.chunks[0].principal_keys == ("group:finance",)
    assert store.document_calls == 1

    cache.delete_pattern("cache:retrieval:acme:*")
    retriever.retrieve(RetrievalRequest(organization_id="acme", question="x", viewer_principal_keys=["org:acme"]))
    assert store.document_calls == 2


def test_retrieve_against_chroma_store(store, embedding_backend):
    indexer = DocumentIndexer(store)
    for doc_id, content in (
        ("vpn-guide", "Connect to the VPN with the corporate certificate before accessing staging."),
        ("lunch-menu", "The cafeteria lunch menu changes every Monday."),
    ):
        indexer.index(
            IndexDocumentRequest(
                organization_id="acme",
                document_id=doc_id,
                title=doc_id,
                source_type="google_drive",
                source_url=f"https://drive.google.com/file/{doc_id}",
                updated_at=(utc_now() - timedelta(days=2)).isoformat(),
                content=content,
            )
        )
    result = ChunkRetriever(store, embedding_backend=embedding_backend).retrieve(
        RetrievalRequest(organization_id="acme", question="VPN certificate staging", viewer_principal_keys=["org:acme"])
    )
    assert result.chunks[0].document_id == "vpn-guide"
    assert [chunk.rank for chunk in result.chunks] == list(range(len(result.chunks)))


def test_repeated_retrieval_returns_the_same_order(store, embedding_backend):
    indexer = DocumentIndexer(store)
    for doc_id in ("alpha", "beta", "gamma", "delta"):
        indexer.index(
            IndexDocumentRequest(
                organization_id="acme",
                document_id=doc_id,
                title=doc_id,
                source_type="google_drive",
                source_url=f"https://drive.google.com/file/{doc_id}",
                updated_at=(utc_now() - timedelta(days=2)).isoformat(),
                content=f"The {doc_id} rollout checklist covers deployment approvals and on-call ownership.",
            )
        )
    retriever = ChunkRetriever(store, embedding_backend=embedding_backend)
    request = RetrievalRequest(organization_id="acme", question="rollout approvals", viewer_principal_keys=["org:acme"])

    first = [chunk.chunk_id for chunk in retriever.retrieve(request).chunks]
    second = [chunk.chunk_id for chunk in retriever.retrieve(request).chunks]

    assert len(first) == 4
    assert first == second
