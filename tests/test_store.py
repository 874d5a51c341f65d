from __future__ import annotations

from datetime import timedelta

from internalwiki.embeddings.store import HybridSearchRequest, is_visible
from internalwiki.ingestion.service import DocumentIndexer, IndexDocumentRequest
from internalwiki.models import utc_now


def _index(store, org: str, doc_id: str, content: str, *, days_old: int = 1, **extra):
    indexer = DocumentIndexer(store)
    return indexer.index(
        IndexDocumentRequest(
            organization_id=org,
            document_id=doc_id,
            title=doc_id.replace("-", " ").title(),
            source_type=extra.pop("source_type", "google_docs"),
            source_url=f"https://docs.google.com/document/d/{doc_id}",
            updated_at=(utc_now() - timedelta(days=days_old)).isoformat(),
            content=content,
            **extra,
        )
    )


def _search(store, embedding_backend, org: str, query: str, viewer, **filters) -> object:
    return store.hybrid_search(
        HybridSearchRequest(
            organization_id=org,
            query_text=query,
            query_embedding=embedding_backend.embed_query(query),
            viewer_principal_keys=viewer,
            **filters,
        )
    )


def test_is_visible_requires_shared_principal():
    assert is_visible(["org:acme", "group:eng"], ["group:eng"])
    assert not is_visible(["group:finance"], ["org:acme"])
    assert not is_visible(["org:acme"], None)
    assert not is_visible(["org:acme"], [])


def test_hybrid_search_scopes_org_and_enforces_acl(store, embedding_backend):
    _index(store, "acme", "expense-handbook", "Expense policy: submit receipts within thirty days.")
    _index(
        store,
        "acme",
        "finance-forecast",
        "Expense forecast for the board, finance only.",
        principal_keys=("group:finance",),
    )
    _index(store, "globex", "globex-expense", "Globex expense policy requires manager approval.")

    result = _search(store, embedding_backend, "acme", "expense policy", ["org:acme"])
    assert {record.document_id for record in result.records} == {"expense-handbook"}
    assert result.filtered_out_count == 1
    assert result.records[0].principal_keys == ("org:acme",)
    assert result.records[0].lexical_score > 0

    finance = _search(store, embedding_backend, "acme", "expense policy", ["group:finance"])
    assert {record.document_id for record in finance.records} == {"finance-forecast"}


def test_hybrid_search_without_viewer_returns_nothing(store, embedding_backend):
    _index(store, "acme", "expense-handbook", "Expense policy: submit receipts within thirty days.")
    result = _search(store, embedding_backend, "acme", "expense policy", None)
    assert result.records == []
    assert result.filtered_out_count == 1


def test_hybrid_search_filters_and_ordering_are_stable(store, embedding_backend):
    _index(store, "acme", "launch-notes", "Launch checklist for the mobile release.", author="Priya")
    _index(store, "acme", "launch-thread", "Launch thread about the mobile release.", source_type="slack", author="Sam")

    slack = _search(store, embedding_backend, "acme", "mobile launch", ["org:acme"], source_type="slack")
    assert [record.document_id for record in slack.records] == ["launch-thread"]

    by_author = _search(store, embedding_backend, "acme", "mobile launch", ["org:acme"], author="priya")
    assert [record.document_id for record in by_author.records] == ["launch-notes"]

    first = _search(store, embedding_backend, "acme", "mobile launch", ["org:acme"])
    second = _search(store, embedding_backend, "acme", "mobile launch", ["org:acme"])
    assert [record.chunk_id for record in first.records] == [record.chunk_id for record in second.records]
    scores = [record.combined_score for record in first.records]
    assert scores == sorted(scores, reverse=True)


def test_reindex_replaces_previous_version(store, embedding_backend):
    old = _index(store, "acme", "runbook", "Restart the ingest worker with the old command.")
    new = _index(store, "acme", "runbook", "Restart the ingest worker with the new supervisor command.")
    assert old.document.doc_version_id != new.document.doc_version_id
    assert store.count("acme") == len(new.chunk_ids)

    result = _search(store, embedding_backend, "acme", "restart ingest worker", ["org:acme"])
    assert {record.doc_version_id for record in result.records} == {new.document.doc_version_id}


def test_list_documents_orders_by_recency_and_respects_acl(store):
    _index(store, "acme", "older-doc", "Older content about travel.", days_old=10)
    _index(store, "acme", "newer-doc", "Newer content about travel.", days_old=1)
    _index(store, "acme", "private-doc", "Private content.", principal_keys=("user:ceo",))

    visible = store.list_documents("acme", viewer_principal_keys=["org:acme"])
    assert [document.document_id for document in visible] == ["newer-doc", "older-doc"]
    assert visible[0].summary == "Newer content about travel."
    everything = store.list_documents("acme", enforce_acl=False)
    assert len(everything) == 3
    assert store.list_documents("acme", viewer_principal_keys=None) == []


def test_reset_only_clears_one_org(store):
    _index(store, "acme", "a-doc", "Acme content.")
    _index(store, "globex", "g-doc", "Globex content.")
    store.reset("acme")
    assert store.count("acme") == 0
    assert store.count("globex") == 1
    store.reset()
    assert store.count() == 0
