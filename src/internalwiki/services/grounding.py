"""Sentence-level grounding checks and answer scoring helpers."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from internalwiki.models import AnswerClaim, Citation, EvidenceItem

CLAIM_SUPPORT_THRESHOLD = 0.14
MIN_SENTENCE_CHARS = 20
MIN_TERM_CHARS = 4

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
_NON_TERM = re.compile(r"[^a-z0-9\s]")


@dataclass(frozen=True)
class GroundingAssessment:
    citation_coverage: float
    unsupported_claim_count: int


@dataclass(frozen=True)
class Traceability:
    coverage: float
    missing_author_count: int
    missing_date_count: int


def split_sentences(text: str) -> list[str]:
    parts = (part.strip() for part in _SENTENCE_SPLIT.split(text))
    return [part for part in parts if len(part) >= MIN_SENTENCE_CHARS]


def term_set(text: str) -> set[str]:
    cleaned = _NON_TERM.sub(" ", text.lower())
    return {term for term in cleaned.split() if len(term) >= MIN_TERM_CHARS}


def assess_grounding(
    answer: str,
    citations: Sequence[Citation],
    chunk_text_by_id: Mapping[str, str],
) -> GroundingAssessment:
    """A sentence is supported when it shares any term with the cited chunks."""

    sentences = split_sentences(answer)
    if not sentences:
        return GroundingAssessment(citation_coverage=1.0, unsupported_claim_count=0)

    cited_terms: set[str] = set()
    for citation in citations:
        text = chunk_text_by_id.get(citation.chunk_id)
        if text:
            cited_terms.update(term_set(text))
    if not cited_terms:
        return GroundingAssessment(citation_coverage=0.0, unsupported_claim_count=len(sentences))

    supported = sum(1 for sentence in sentences if term_set(sentence) & cited_terms)
    return GroundingAssessment(
        citation_coverage=supported / len(sentences),
        unsupported_claim_count=max(0, len(sentences) - supported),
    )


def citation_overlap_score(claim_terms: set[str], chunk_text: str) -> float:
    if not claim_terms:
        return 0.0
    chunk_terms = term_set(chunk_text)
    if not chunk_terms:
        return 0.0
    return len(claim_terms & chunk_terms) / len(claim_terms)


def build_claims(
    answer: str,
    citations: Sequence[Citation],
    chunk_text_by_id: Mapping[str, str],
) -> list[AnswerClaim]:
    sentences = split_sentences(answer)
    if not sentences and answer.strip():
        sentences = [answer.strip()]
    claims: list[AnswerClaim] = []
    for index, sentence in enumerate(sentences):
        terms = term_set(sentence)
        matched = tuple(
            citation
            for citation in citations
            if citation.chunk_id in chunk_text_by_id
            and citation_overlap_score(terms, chunk_text_by_id[citation.chunk_id]) >= CLAIM_SUPPORT_THRESHOLD
        )
        claims.append(
            AnswerClaim(
                id=f"claim-{index + 1}",
                text=sentence,
                order=index,
                supported=bool(matched),
                citations=matched,
            )
        )
    return claims


def _unit(value: float) -> float:
    return max(0.0, min(1.0, value))


def compute_retrieval_score(sources: Sequence[EvidenceItem]) -> float:
    """Mean of relevance times trust over the top three sources."""

    top = list(sources[:3])
    if not top:
        return 0.0
    total = sum(source.relevance * _unit(source.source_score / 100) for source in top)
    return _unit(total / len(top))


def average_citation_trust(citations: Sequence[Citation], chunk_scores: Mapping[str, float]) -> float:
    if not citations:
        return 0.0
    total = sum(_unit(chunk_scores.get(citation.chunk_id, 0.0) / 100) for citation in citations)
    return _unit(total / len(citations))


def compute_answer_confidence(
    model_confidence: float,
    retrieval_score: float,
    citation_coverage: float,
    citation_trust: float,
) -> float:
    blended = model_confidence * 0.1 + retrieval_score * 0.35 + citation_coverage * 0.35 + citation_trust * 0.2
    return max(0.05, min(0.99, blended))


def compute_traceability(
    claims: Sequence[AnswerClaim],
    sources: Sequence[EvidenceItem],
    citation_coverage: float,
) -> Traceability:
    if claims:
        coverage = sum(1 for claim in claims if claim.supported) / len(claims)
    else:
        coverage = citation_coverage
    return Traceability(
        coverage=_unit(coverage),
        missing_author_count=sum(1 for source in sources if not source.provenance.author),
        missing_date_count=sum(1 for source in sources if not source.provenance.last_updated_at),
    )


def estimate_tokens(text: str) -> int:
    return max(1, math.ceil(len(text) / 4))
