"""FastAPI application exposing the InternalWiki evidence services."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from internalwiki.api.schemas import AssistantQueryModel, DocumentIndexModel, DocumentIndexResponse
from internalwiki.cache import build_cache_client
from internalwiki.config import Settings, get_settings
from internalwiki.dependencies import AppDependencies, build_dependencies
from internalwiki.embeddings import ChromaEmbeddingStore
from internalwiki.ingestion import DocumentIndexer, IndexDocumentRequest, IndexingError
from internalwiki.metrics.observability import bind_correlation_id, clear_correlation_id, configure_logging, get_logger
from internalwiki.quality import QualityContractLedger
from internalwiki.services.generation import GenerationError
from internalwiki.services.query import AssistantQueryService

VIEWER_HEADER = "X-Viewer-Principals"


def viewer_principal_keys(request: Request) -> list[str] | None:
    """Comma-separated principal keys of the requesting user, or None when absent."""

    raw = request.headers.get(VIEWER_HEADER, "")
    keys = [key.strip() for key in raw.split(",") if key.strip()]
    return keys or None


def create_app(*, settings: Settings | None = None, dependencies: AppDependencies | None = None) -> FastAPI:
    settings = settings or get_settings()
    owns_cache = dependencies is None
    if dependencies is None:
        cache = build_cache_client(settings)
        cache.connect()
        dependencies = build_dependencies(settings, cache=cache)
    deps = dependencies

    configure_logging()
    logger = get_logger("api")

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        if owns_cache and deps.cache is not None:
            deps.cache.close()

    app = FastAPI(title="InternalWiki Evidence API", version="0.1.0", lifespan=lifespan)
    app.state.dependencies = deps

    if settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_allow_origins),
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=list(settings.cors_allow_methods),
            allow_headers=list(settings.cors_allow_headers),
        )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):  # type: ignore[override]
        correlation_id = request.headers.get("X-Request-ID", uuid4().hex)
        request.state.correlation_id = correlation_id
        bind_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            clear_correlation_id()
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    def require_api_key(request: Request) -> None:
        expected = settings.api_key
        if not expected:
            return
        provided = request.headers.get("X-API-Key")
        if provided != expected:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    @app.exception_handler(GenerationError)
    async def handle_generation_error(request: Request, exc: GenerationError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("generation.error", correlation_id=correlation_id, provider=exc.provider, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"detail": str(exc), "errors": exc.errors, "correlation_id": correlation_id},
        )

    @app.exception_handler(IndexingError)
    async def handle_indexing_error(request: Request, exc: IndexingError) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("ingestion.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "correlation_id": correlation_id},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        correlation_id = getattr(request.state, "correlation_id", uuid4().hex)
        logger.error("unhandled.error", correlation_id=correlation_id, detail=str(exc))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error", "correlation_id": correlation_id},
        )

    def get_dependencies(request: Request) -> AppDependencies:
        return request.app.state.dependencies

    def get_indexer(dep: AppDependencies = Depends(get_dependencies)) -> DocumentIndexer:
        return dep.indexer

    def get_store(dep: AppDependencies = Depends(get_dependencies)) -> ChromaEmbeddingStore:
        return dep.store

    def get_query_service(dep: AppDependencies = Depends(get_dependencies)) -> AssistantQueryService:
        return dep.query_service

    def get_ledger(dep: AppDependencies = Depends(get_dependencies)) -> QualityContractLedger:
        return dep.ledger

    @app.post(
        "/orgs/{org_id}/documents",
        response_model=DocumentIndexResponse,
        status_code=status.HTTP_201_CREATED,
    )
    def index_document(
        org_id: str,
        payload: DocumentIndexModel,
        indexer: DocumentIndexer = Depends(get_indexer),
        _auth: None = Depends(require_api_key),
    ) -> DocumentIndexResponse:
        result = indexer.index(
            IndexDocumentRequest(organization_id=org_id, **payload.model_dump()),
        )
        return DocumentIndexResponse(
            document_id=result.document.document_id,
            doc_version_id=result.document.doc_version_id,
            chunk_count=len(result.chunk_ids),
            chunk_ids=list(result.chunk_ids),
            source_score=result.source_score,
        )

    @app.get("/orgs/{org_id}/documents")
    def list_documents(
        org_id: str,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        store: ChromaEmbeddingStore = Depends(get_store),
        _auth: None = Depends(require_api_key),
    ) -> dict[str, Any]:
        documents = store.list_documents(org_id, limit=limit, viewer_principal_keys=viewer_principal_keys(request))
        return {
            "documents": [
                {
                    "document_id": document.document_id,
                    "doc_version_id": document.doc_version_id,
                    "title": document.title,
                    "source_type": document.source_type,
                    "source_url": document.source_url,
                    "updated_at": document.updated_at,
                    "author": document.author,
                    "summary": document.summary,
                }
                for document in documents
            ],
        }

    @app.post("/orgs/{org_id}/assist/query")
    def assist_query(
        org_id: str,
        payload: AssistantQueryModel,
        request: Request,
        service: AssistantQueryService = Depends(get_query_service),
        _auth: None = Depends(require_api_key),
    ) -> dict[str, Any]:
        response = service.answer(
            org_id,
            payload.to_domain(),
            viewer_principal_keys=viewer_principal_keys(request),
        )
        return response.to_dict()

    @app.get("/orgs/{org_id}/answer-quality/contract")
    def answer_quality_summary(
        org_id: str,
        window_days: int = Query(default=settings.quality_report_window_days, ge=1, le=90),
        ledger: QualityContractLedger = Depends(get_ledger),
        _auth: None = Depends(require_api_key),
    ) -> dict[str, Any]:
        return ledger.summary(org_id, window_days=window_days).to_dict()

    @app.get("/metrics")
    async def metrics() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        from internalwiki import __version__

        return {"status": "ok", "version": __version__, "environment": settings.environment}

    @app.get("/healthz/ready")
    def readiness(store: ChromaEmbeddingStore = Depends(get_store)) -> dict[str, Any]:
        return {"status": "ready", "chunks": store.count()}

    return app
