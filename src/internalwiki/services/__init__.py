"""Service layer orchestrations for InternalWiki."""

from .evidence import build_evidence_items, connector_from_source_url, map_chunk_to_citation
from .generation import (
    AiProvider,
    GenerationError,
    MockAiProvider,
    OpenAiProvider,
    SummaryResult,
    get_ai_provider,
    parse_grounded_answer,
)
from .query import AssistantQueryResponse, AssistantQueryService, PromptBuilder, PromptBuilderConfig

__all__ = [
    "AiProvider",
    "AssistantQueryResponse",
    "AssistantQueryService",
    "GenerationError",
    "MockAiProvider",
    "OpenAiProvider",
    "PromptBuilder",
    "PromptBuilderConfig",
    "SummaryResult",
    "build_evidence_items",
    "connector_from_source_url",
    "get_ai_provider",
    "map_chunk_to_citation",
    "parse_grounded_answer",
]
