"""Chroma-backed chunk and document store with organisation-scoped hybrid search."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Protocol, Sequence

import chromadb
from chromadb.api import ClientAPI

from internalwiki.embeddings.service import EmbeddingBackend
from internalwiki.metrics.observability import get_logger
from internalwiki.models import ChunkSearchRecord, DocumentChunk, DocumentRecord, parse_timestamp, utc_now

LOGGER = get_logger("store")

RRF_K = 30
_TOKEN_RE = re.compile(r"[a-z0-9]+")
_ACL_SEPARATOR = "|"


@dataclass(frozen=True)
class HybridSearchRequest:
    """Filters for one organisation-scoped hybrid search."""

    organization_id: str
    query_text: str
    query_embedding: Sequence[float]
    limit: int = 8
    source_type: str | None = None
    viewer_principal_keys: Sequence[str] | None = None
    date_from: str | None = None
    date_to: str | None = None
    author: str | None = None
    min_source_score: float | None = None
    document_ids: Sequence[str] | None = None


@dataclass(frozen=True)
class HybridSearchResult:
    records: Sequence[ChunkSearchRecord]
    filtered_out_count: int = 0


class EvidenceStore(Protocol):
    """Protocol for the data store behind chunk retrieval."""

    def upsert_document(self, document: DocumentRecord, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        """Persist a document version and its chunks, superseding older versions."""

    def hybrid_search(self, request: HybridSearchRequest) -> HybridSearchResult:
        """Return fused lexical and vector matches for the request."""

    def list_documents(
        self,
        organization_id: str,
        *,
        limit: int | None = None,
        viewer_principal_keys: Sequence[str] | None = None,
        enforce_acl: bool = True,
    ) -> Sequence[DocumentRecord]:
        """Return organisation documents, most recently updated first."""

    def count(self, organization_id: str | None = None) -> int:
        """Return the number of stored chunks."""

    def reset(self, organization_id: str | None = None) -> None:
        """Remove stored chunks and documents."""


def tokenize(text: str) -> list[str]:
    return [token for token in _TOKEN_RE.findall(text.lower()) if len(token) > 1]


def token_overlap_score(query_tokens: set[str], text: str) -> float:
    tokens = set(tokenize(text))
    if not tokens or not query_tokens:
        return 0.0
    overlap = len(query_tokens.intersection(tokens))
    return overlap / len(query_tokens)


def is_visible(principal_keys: Iterable[str], viewer_principal_keys: Sequence[str] | None) -> bool:
    """A source is visible when its ACL shares at least one key with the viewer."""

    if not viewer_principal_keys:
        return False
    return bool(set(principal_keys).intersection(viewer_principal_keys))


class ChromaEmbeddingStore:
    """Chroma-backed evidence store."""

    def __init__(
        self,
        embedding_backend: EmbeddingBackend,
        collection_name: str = "internalwiki-chunks",
        documents_collection_name: str | None = None,
        *,
        client: ClientAPI | None = None,
        persist_directory: str | Path | None = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif persist_directory is not None:
            self._client = chromadb.PersistentClient(path=str(persist_directory))
        else:
            self._client = chromadb.EphemeralClient()
        self._chunks = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._documents = self._client.get_or_create_collection(
            name=documents_collection_name or f"{collection_name}-documents",
            metadata={"hnsw:space": "cosine"},
        )
        self._backend = embedding_backend

    def upsert_document(self, document: DocumentRecord, chunks: Sequence[DocumentChunk]) -> Sequence[str]:
        org = document.organization_id
        self._delete(self._chunks, {"$and": [{"organization_id": org}, {"document_id": document.document_id}]})
        ids: list[str] = []
        if chunks:
            vectors = self._backend.embed_texts([chunk.text for chunk in chunks])
            ids = [self._scoped_id(org, chunk.chunk_id) for chunk in chunks]
            self._chunks.upsert(
                ids=ids,
                documents=[chunk.text for chunk in chunks],
                embeddings=[list(vector) for vector in vectors],
                metadatas=[self._serialize_chunk(org, chunk) for chunk in chunks],
            )
        summary_text = f"{document.title}\n{document.summary or ''}".strip()
        document_vector = self._backend.embed_query(summary_text or document.document_id)
        self._documents.upsert(
            ids=[self._scoped_id(org, document.document_id)],
            documents=[document.summary or ""],
            embeddings=[list(document_vector)],
            metadatas=[self._serialize_document(document)],
        )
        LOGGER.info(
            "store.document_upserted",
            organization_id=org,
            document_id=document.document_id,
            doc_version_id=document.doc_version_id,
            chunk_count=len(ids),
        )
        return [chunk.chunk_id for chunk in chunks]

    def hybrid_search(self, request: HybridSearchRequest) -> HybridSearchResult:
        if request.limit <= 0 or self._chunks.count() == 0:
            return HybridSearchResult(records=[])
        pool = max(30, request.limit * 4)
        where = self._build_where(request)
        filtered_out: set[str] = set()

        vector_rows = self._vector_rows(request, where, pool)
        lexical_rows = self._lexical_rows(request, where, pool)

        merged: dict[str, dict[str, object]] = {}
        for source, rows in (("vector", vector_rows), ("lexical", lexical_rows)):
            rank = 0
            for chunk_id, text, metadata, score in rows:
                if not self._matches_author(metadata, request.author):
                    continue
                if not is_visible(self._acl(metadata), request.viewer_principal_keys):
                    filtered_out.add(chunk_id)
                    continue
                rank += 1
                entry = merged.setdefault(chunk_id, {"text": text, "metadata": metadata})
                entry[f"{source}_rank"] = rank
                entry[f"{source}_score"] = score

        now = utc_now()
        records = [self._to_record(entry, now) for entry in merged.values()]
        records.sort(key=lambda record: (-record.combined_score, record.chunk_id))
        return HybridSearchResult(records=records[: request.limit], filtered_out_count=len(filtered_out))

    def list_documents(
        self,
        organization_id: str,
        *,
        limit: int | None = None,
        viewer_principal_keys: Sequence[str] | None = None,
        enforce_acl: bool = True,
    ) -> Sequence[DocumentRecord]:
        batch = self._documents.get(where={"organization_id": organization_id}, include=["metadatas", "documents"])
        metadatas = batch.get("metadatas") or []
        documents = batch.get("documents") or []
        records = [self._deserialize_document(metadata, summary) for metadata, summary in zip(metadatas, documents, strict=False)]
        if enforce_acl:
            records = [record for record in records if is_visible(record.principal_keys, viewer_principal_keys)]

        def sort_key(record: DocumentRecord) -> tuple[float, str]:
            parsed = parse_timestamp(record.updated_at)
            return (-(parsed.timestamp() if parsed else float("-inf")), record.document_id)

        records.sort(key=sort_key)
        return records[:limit] if limit is not None else records

    def count(self, organization_id: str | None = None) -> int:
        if organization_id is None:
            return int(self._chunks.count())
        batch = self._chunks.get(where={"organization_id": organization_id}, include=[])
        return len(batch.get("ids") or [])

    def reset(self, organization_id: str | None = None) -> None:
        for collection in (self._chunks, self._documents):
            if organization_id:
                self._delete(collection, {"organization_id": organization_id})
            else:
                ids = collection.get(include=[]).get("ids") or []
                if ids:
                    collection.delete(ids=ids)

    def _vector_rows(self, request: HybridSearchRequest, where: Mapping[str, object], pool: int) -> list[tuple]:
        results = self._chunks.query(
            query_embeddings=[list(request.query_embedding)],
            n_results=pool,
            where=where,
            include=["documents", "metadatas", "distances"],
        )
        ids = self._first(results.get("ids"))
        documents = self._first(results.get("documents"))
        metadatas = self._first(results.get("metadatas"))
        distances = self._first(results.get("distances"))
        rows: list[tuple] = []
        for index, (text, metadata) in enumerate(zip(documents, metadatas, strict=False)):
            if index >= len(ids):
                break
            distance = distances[index] if index < len(distances) else None
            similarity = max(0.0, 1.0 - float(distance)) if distance is not None else 0.0
            rows.append((str(metadata.get("chunk_id", ids[index])), text, metadata, similarity))
        return rows

    def _lexical_rows(self, request: HybridSearchRequest, where: Mapping[str, object], pool: int) -> list[tuple]:
        query_tokens = set(tokenize(request.query_text))
        if not query_tokens:
            return []
        batch = self._chunks.get(where=where, include=["documents", "metadatas"])
        ids = batch.get("ids") or []
        documents = batch.get("documents") or []
        metadatas = batch.get("metadatas") or []
        scored: list[tuple] = []
        for chroma_id, text, metadata in zip(ids, documents, metadatas, strict=False):
            score = token_overlap_score(query_tokens, text or "")
            if score > 0:
                scored.append((str(metadata.get("chunk_id", chroma_id)), text, metadata, score))
        scored.sort(key=lambda row: (-row[3], row[0]))
        return scored[:pool]

    def _build_where(self, request: HybridSearchRequest) -> dict[str, object]:
        conditions: list[dict[str, object]] = [{"organization_id": request.organization_id}]
        if request.source_type:
            conditions.append({"source_type": request.source_type})
        if request.document_ids:
            conditions.append({"document_id": {"$in": list(request.document_ids)}})
        if request.min_source_score is not None:
            conditions.append({"source_score": {"$gte": float(request.min_source_score)}})
        date_from = parse_timestamp(request.date_from)
        if date_from is not None:
            conditions.append({"updated_at_ts": {"$gte": date_from.timestamp()}})
        date_to = parse_timestamp(request.date_to)
        if date_to is not None:
            conditions.append({"updated_at_ts": {"$lte": date_to.timestamp()}})
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    @staticmethod
    def _matches_author(metadata: Mapping[str, object], author: str | None) -> bool:
        if not author:
            return True
        return author.lower() in str(metadata.get("author", "")).lower()

    @staticmethod
    def _acl(metadata: Mapping[str, object]) -> list[str]:
        raw = str(metadata.get("principal_keys", ""))
        return [key for key in raw.split(_ACL_SEPARATOR) if key]

    def _to_record(self, entry: Mapping[str, object], now) -> ChunkSearchRecord:
        metadata: Mapping[str, object] = entry["metadata"]  # type: ignore[assignment]
        vector_rank = entry.get("vector_rank")
        lexical_rank = entry.get("lexical_rank")
        source_score = float(metadata.get("source_score", 50.0))
        vector_component = 1 / (RRF_K + vector_rank) if vector_rank else 0.0
        lexical_component = 1 / (RRF_K + lexical_rank) if lexical_rank else 0.0
        trust = min(1.0, max(0.0, source_score / 100))
        updated_at = parse_timestamp(self._optional(metadata, "updated_at"))
        recency = 0.0
        if updated_at is not None:
            age_days = (now - updated_at).total_seconds() / 86400
            recency = max(0.0, 1 - age_days / 30)
        return ChunkSearchRecord(
            chunk_id=str(metadata.get("chunk_id", "")),
            doc_version_id=str(metadata.get("doc_version_id", "")),
            text=str(entry.get("text") or ""),
            source_url=str(metadata.get("source_url", "")),
            source_score=source_score,
            document_id=self._optional(metadata, "document_id"),
            document_title=self._optional(metadata, "document_title"),
            connector_type=self._optional(metadata, "source_type"),
            author=self._optional(metadata, "author"),
            updated_at=self._optional(metadata, "updated_at"),
            source_format=self._optional(metadata, "source_format"),
            source_external_id=self._optional(metadata, "source_external_id"),
            canonical_source_url=self._optional(metadata, "canonical_source_url"),
            sync_run_id=self._optional(metadata, "sync_run_id"),
            source_checksum=self._optional(metadata, "source_checksum"),
            source_version_label=self._optional(metadata, "source_version_label"),
            principal_keys=tuple(self._acl(metadata)),
            vector_rank=int(vector_rank) if vector_rank else None,
            lexical_rank=int(lexical_rank) if lexical_rank else None,
            vector_similarity=float(entry.get("vector_score", 0.0)),
            lexical_score=float(entry.get("lexical_score", 0.0)),
            combined_score=vector_component + lexical_component + 0.2 * trust + 0.1 * recency,
        )

    def _serialize_chunk(self, organization_id: str, chunk: DocumentChunk) -> MutableMapping[str, object]:
        updated_at = parse_timestamp(chunk.updated_at)
        metadata: MutableMapping[str, object] = {
            "organization_id": organization_id,
            "chunk_id": chunk.chunk_id,
            "doc_version_id": chunk.doc_version_id,
            "source_url": chunk.source_url,
            "source_score": float(chunk.source_score),
            "order": chunk.rank,
            "principal_keys": self._join_acl(chunk.principal_keys),
            "document_id": chunk.document_id,
            "document_title": chunk.document_title,
            "source_type": chunk.connector_type,
            "author": chunk.author,
            "updated_at": chunk.updated_at,
            "updated_at_ts": updated_at.timestamp() if updated_at else None,
            "source_format": chunk.source_format,
            "source_external_id": chunk.source_external_id,
            "canonical_source_url": chunk.canonical_source_url,
            "sync_run_id": chunk.sync_run_id,
            "source_checksum": chunk.source_checksum,
            "source_version_label": chunk.source_version_label,
        }
        return {key: value for key, value in metadata.items() if value is not None}

    def _serialize_document(self, document: DocumentRecord) -> MutableMapping[str, object]:
        metadata: MutableMapping[str, object] = {
            "organization_id": document.organization_id,
            "document_id": document.document_id,
            "doc_version_id": document.doc_version_id,
            "title": document.title,
            "source_type": document.source_type,
            "source_url": document.source_url,
            "updated_at": document.updated_at,
            "author": document.author,
            "source_authority": float(document.source_authority),
            "author_authority": float(document.author_authority),
            "citation_coverage": float(document.citation_coverage),
            "principal_keys": self._join_acl(document.principal_keys),
            "source_format": document.source_format,
            "source_external_id": document.source_external_id,
            "sync_run_id": document.sync_run_id,
            "source_checksum": document.source_checksum,
        }
        return {key: value for key, value in metadata.items() if value is not None}

    def _deserialize_document(self, metadata: Mapping[str, object], summary: str | None) -> DocumentRecord:
        return DocumentRecord(
            document_id=str(metadata.get("document_id", "")),
            organization_id=str(metadata.get("organization_id", "")),
            title=str(metadata.get("title", "")),
            source_type=str(metadata.get("source_type", "")),
            source_url=str(metadata.get("source_url", "")),
            updated_at=str(metadata.get("updated_at", "")),
            doc_version_id=str(metadata.get("doc_version_id", "")),
            author=self._optional(metadata, "author"),
            summary=summary or None,
            source_authority=float(metadata.get("source_authority", 0.5)),
            author_authority=float(metadata.get("author_authority", 0.5)),
            citation_coverage=float(metadata.get("citation_coverage", 0.5)),
            principal_keys=tuple(self._acl(metadata)),
            source_format=self._optional(metadata, "source_format"),
            source_external_id=self._optional(metadata, "source_external_id"),
            sync_run_id=self._optional(metadata, "sync_run_id"),
            source_checksum=self._optional(metadata, "source_checksum"),
        )

    @staticmethod
    def _delete(collection, where: Mapping[str, object]) -> None:
        ids = collection.get(where=where, include=[]).get("ids") or []
        if ids:
            collection.delete(ids=ids)

    @staticmethod
    def _scoped_id(organization_id: str, item_id: str) -> str:
        return f"{organization_id}:{item_id}"

    @staticmethod
    def _join_acl(keys: Iterable[str]) -> str:
        cleaned = sorted({key.strip() for key in keys if key and key.strip()})
        return f"{_ACL_SEPARATOR}{_ACL_SEPARATOR.join(cleaned)}{_ACL_SEPARATOR}" if cleaned else ""

    @staticmethod
    def _optional(metadata: Mapping[str, object], key: str) -> str | None:
        value = metadata.get(key)
        return str(value) if value not in (None, "") else None

    @staticmethod
    def _first(value: object) -> list:
        if isinstance(value, list):
            return list(value[0]) if value else []
        return []
