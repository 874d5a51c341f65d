"""Query expansion: provider-generated rephrasings with a rule-based fallback."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal, Protocol, Sequence

from internalwiki.metrics.observability import get_logger
from internalwiki.models import ContextChunk, GroundedAnswer
from internalwiki.services.generation import NO_CONTEXT_ANSWER, GenerationError

LOGGER = get_logger("expansion")

QueryIntent = Literal["factual", "procedural", "analytical"]

MAX_VARIATIONS = 5

EXPANSION_PROMPT = (
    "Generate 3-5 alternative phrasings or related queries for the following question. "
    "Return only the queries, one per line, without numbering or bullets:\n\n"
    "Question: {query}\n\n"
    "Alternative queries:"
)

_PROCEDURAL = re.compile(r"\b(how|what steps|process|procedure|workflow|guide|tutorial|instructions)\b", re.IGNORECASE)
_ANALYTICAL = re.compile(r"\b(why|analyze|compare|evaluate|assess|trend|pattern|relationship|impact)\b", re.IGNORECASE)
_NUMBERED = re.compile(r"^\d+[.)]")

# Leading question word -> rephrasings; only the first matching word applies.
_SYNONYMS: dict[str, tuple[str, ...]] = {
    "what": ("which", "what is"),
    "how": ("what is the process", "what are the steps"),
    "who": ("which person", "which team"),
    "when": ("what time", "what date"),
    "where": ("which location", "in what"),
}


class ExpansionProvider(Protocol):
    name: str

    def answer_question(self, question: str, context_chunks: Sequence[ContextChunk]) -> GroundedAnswer:
        """Answer ``question``; used here only for its free-text answer."""


@dataclass(frozen=True)
class ExpandedQuery:
    original: str
    intent: QueryIntent
    variations: list[str] = field(default_factory=list)
    expanded_by: Literal["provider", "rules"] = "rules"


def classify_query_intent(query: str) -> QueryIntent:
    if _PROCEDURAL.search(query):
        return "procedural"
    if _ANALYTICAL.search(query):
        return "analytical"
    return "factual"


def generate_query_variations(query: str) -> list[str]:
    """Return the original query followed by up to four rephrasings."""

    variations = [query]
    lowered = query.lower()
    for word, alternatives in _SYNONYMS.items():
        if not lowered.startswith(word):
            continue
        for alternative in alternatives:
            variation = re.sub(rf"^{word}", alternative, query, count=1, flags=re.IGNORECASE)
            if variation != query and variation not in variations:
                variations.append(variation)
        break
    return variations[:MAX_VARIATIONS]


def _provider_variations(query: str, answer: str) -> list[str]:
    variations = [query]
    for line in answer.splitlines():
        candidate = line.strip()
        if not candidate or _NUMBERED.match(candidate) or candidate in variations:
            continue
        variations.append(candidate)
    return variations[:MAX_VARIATIONS]


def expand_query(query: str, provider: ExpansionProvider | None = None) -> ExpandedQuery:
    """Ask the provider for rephrasings of ``query``.

    Falls back to :func:`generate_query_variations` when no provider is given,
    when the provider fails, or when it returns nothing usable. The original
    query is always the first variation.
    """

    intent = classify_query_intent(query)
    if provider is not None:
        try:
            response = provider.answer_question(EXPANSION_PROMPT.format(query=query), [])
        except GenerationError as exc:
            LOGGER.warning("expansion.failed", provider=provider.name, detail=str(exc))
        else:
            if response.answer != NO_CONTEXT_ANSWER:
                variations = _provider_variations(query, response.answer)
                if len(variations) > 1:
                    return ExpandedQuery(original=query, intent=intent, variations=variations, expanded_by="provider")
            LOGGER.info("expansion.empty", provider=provider.name)
    return ExpandedQuery(original=query, intent=intent, variations=generate_query_variations(query))
