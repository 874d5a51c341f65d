from __future__ import annotations

from internalwiki.config import get_settings
from internalwiki.quality.contract import AnswerQualityPolicy


def test_defaults_use_offline_providers():
    settings = get_settings({"openai_api_key": None, "redis_url": None})
    assert settings.use_openai is False
    assert settings.embedding_dim == 1536
    assert settings.cache_key_prefix == "cache"


def test_retrieval_and_chunking_defaults():
    settings = get_settings({})
    assert settings.retrieval_limit == 8
    assert settings.chunk_overlap < settings.chunk_size
    assert settings.evaluation_threshold_good_pct == 75.0


def test_quality_policy_follows_settings():
    settings = get_settings({"quality_min_citation_coverage": 0.6, "quality_freshness_window_days": 10})
    policy = AnswerQualityPolicy.from_settings(settings)
    assert policy.groundedness.min_citation_coverage == 0.6
    assert policy.freshness.window_days == 10
    assert policy.freshness.historical_min_fresh_citation_coverage == 0.0
