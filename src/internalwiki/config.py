"""Runtime configuration for the InternalWiki evidence services."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed configuration model."""

    model_config = SettingsConfigDict(env_prefix="internalwiki_", env_file=".env", case_sensitive=False)

    environment: Literal["dev", "test", "prod"] = "dev"

    chroma_persist_dir: Path | None = Path("./.chroma")
    chroma_collection: str = "internalwiki-chunks"
    chroma_documents_collection: str = "internalwiki-documents"
    chroma_host: str | None = None
    chroma_port: int | None = None
    chroma_ssl: bool = False

    # AI provider; an empty key selects the deterministic mock provider
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4.1-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    provider_timeout_seconds: float = 30.0
    embedding_dim: int = 1536

    # Optional cache; memory cache is used when unset
    redis_url: str | None = None
    cache_key_prefix: str = "cache"
    cache_query_results_ttl_seconds: int = 300
    cache_document_metadata_ttl_seconds: int = 3600

    retrieval_limit: int = 8
    retrieval_fallback_documents: int = 4
    retrieval_max_context_tokens: int = 4000
    # Ask the AI provider for query rephrasings before falling back to the rule-based ones
    query_expansion_with_provider: bool = False

    chunk_size: int = 900
    chunk_overlap: int = 120

    # Answer quality contract policy
    quality_min_citation_coverage: float = 0.8
    quality_max_unsupported_claims: int = 0
    quality_freshness_window_days: int = 30
    quality_min_fresh_citation_coverage: float = 0.8
    quality_historical_min_fresh_citation_coverage: float = 0.0
    quality_report_window_days: int = 7

    evaluation_org_id: str | None = None
    evaluation_actor_id: str | None = None
    evaluation_threshold_good_pct: float = 75.0
    evaluation_report_dir: Path = Path("./evaluations/runs")

    # Security
    api_key: str | None = None  # if set, required in X-API-Key header
    cors_allow_origins: tuple[str, ...] = ()
    cors_allow_credentials: bool = False
    cors_allow_methods: tuple[str, ...] = ("GET", "POST", "OPTIONS")
    cors_allow_headers: tuple[str, ...] = ("*",)

    @property
    def is_test(self) -> bool:
        return self.environment == "test"

    @property
    def use_openai(self) -> bool:
        return bool(self.openai_api_key)


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return Settings()


def get_settings(override: Optional[dict[str, object]] = None) -> Settings:
    """Return settings, optionally overriding values without mutating cache."""

    if override:
        return Settings(**override)
    return _cached_settings()
