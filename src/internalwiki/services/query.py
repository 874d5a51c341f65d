"""Assistant query orchestration: retrieval, generation, grounding and the quality gate."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Sequence

from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import (
    AnswerClaim,
    AssistantMode,
    AssistantQueryRequest,
    Citation,
    ContextChunk,
    DocumentChunk,
    EvidenceItem,
    GroundedAnswer,
    validate_citation,
)
from internalwiki.quality.contract import (
    AnswerQualityContractResult,
    AnswerQualityPolicy,
    QualityContractInput,
    evaluate_answer_quality,
)
from internalwiki.quality.ledger import QualityContractLedger
from internalwiki.retrieval.expansion import classify_query_intent, expand_query
from internalwiki.retrieval.service import RetrievalRequest, Retriever
from internalwiki.services.evidence import build_evidence_items, map_chunk_to_citation
from internalwiki.services.generation import NO_CONTEXT_ANSWER, AiProvider, GenerationError, validate_grounded_answer
from internalwiki.services.grounding import (
    GroundingAssessment,
    Traceability,
    assess_grounding,
    average_citation_trust,
    build_claims,
    compute_answer_confidence,
    compute_retrieval_score,
    compute_traceability,
    estimate_tokens,
)

BLOCKED_ANSWER = (
    "Answer blocked by verification safeguards. "
    "Sync more sources or broaden your filters to reach required citation support."
)
SUMMARIES_ONLY_POLICY = "Policy: summaries only. Do not generate action plans, implementation steps, or task lists."
MIN_GROUNDING_COVERAGE = 0.8
VARIATION_TRIGGER = 5
MAX_VARIATION_SEARCHES = 3


@dataclass(frozen=True)
class PromptBuilderConfig:
    """Configuration for prompt construction."""

    max_context_tokens: int = 4000


class PromptBuilder:
    """Builds mode-specific questions and the token-capped provider context."""

    def __init__(self, config: PromptBuilderConfig | None = None) -> None:
        self._config = config or PromptBuilderConfig()

    def build_question(self, request: AssistantQueryRequest) -> str:
        if request.mode == "summarize":
            instruction = (
                "Create a concise executive summary in 4-6 bullets with key points, owners, and risks, "
                "all grounded in citations."
            )
        elif request.mode == "trace":
            instruction = (
                "Provide an evidence trace summary. Map claims to sources clearly, keep output concise, "
                "and avoid prescriptive next steps."
            )
        else:
            instruction = "Provide a grounded summary answer followed by 2-4 cited bullets."
        return f"{instruction}\n{SUMMARIES_ONLY_POLICY}\nQuestion: {request.query}"

    @staticmethod
    def strict(question: str) -> str:
        return (
            f"{question}\n\nStrict grounding: include only claims supported by context; "
            "if evidence is insufficient, say so explicitly. Keep response summary-only."
        )

    def build_context(self, chunks: Sequence[DocumentChunk]) -> list[ContextChunk]:
        """Keep chunks in rank order until the token budget is spent; always keep the first."""

        selected: list[ContextChunk] = []
        used = 0
        for chunk in chunks:
            tokens = estimate_tokens(chunk.text)
            if selected and used + tokens > self._config.max_context_tokens:
                break
            selected.append(
                ContextChunk(
                    chunk_id=chunk.chunk_id,
                    doc_version_id=chunk.doc_version_id,
                    source_url=chunk.source_url,
                    text=chunk.text,
                    source_score=chunk.source_score,
                )
            )
            used += tokens
        return selected


@dataclass(frozen=True)
class GroundingMeta:
    citation_coverage: float
    unsupported_claim_count: int
    retrieval_score: float


@dataclass(frozen=True)
class Timings:
    retrieval_ms: int
    generation_ms: int


@dataclass(frozen=True)
class Verification:
    status: Literal["passed", "blocked"]
    reasons: Sequence[str]
    reason_codes: Sequence[str]
    citation_coverage: float
    unsupported_claims: int


@dataclass(frozen=True)
class PermissionsMeta:
    filtered_out_count: int
    acl_mode: Literal["enforced"] = "enforced"


@dataclass(frozen=True)
class AssistantQueryResponse:
    answer: str
    confidence: float
    source_score: float
    citations: Sequence[Citation]
    claims: Sequence[AnswerClaim]
    sources: Sequence[EvidenceItem]
    grounding: GroundingMeta
    traceability: Traceability
    timings: Timings
    verification: Verification
    permissions: PermissionsMeta
    quality_contract: AnswerQualityContractResult
    mode: AssistantMode
    model: str
    intent: str = "factual"
    fallback_used: bool = False
    chunk_ids: Sequence[str] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "source_score": self.source_score,
            "citations": [citation.to_dict() for citation in self.citations],
            "claims": [asdict(claim) for claim in self.claims],
            "sources": [asdict(source) for source in self.sources],
            "grounding": asdict(self.grounding),
            "traceability": asdict(self.traceability),
            "timings": asdict(self.timings),
            "verification": {
                "status": self.verification.status,
                "reasons": list(self.verification.reasons),
                "reason_codes": list(self.verification.reason_codes),
                "citation_coverage": self.verification.citation_coverage,
                "unsupported_claims": self.verification.unsupported_claims,
            },
            "permissions": asdict(self.permissions),
            "quality_contract": self.quality_contract.to_dict(),
            "mode": self.mode,
            "model": self.model,
            "intent": self.intent,
            "fallback_used": self.fallback_used,
        }


class AssistantQueryService:
    """Orchestrates retrieval, generation and the answer quality contract for one question."""

    def __init__(
        self,
        retriever: Retriever,
        provider: AiProvider,
        *,
        ledger: QualityContractLedger | None = None,
        policy: AnswerQualityPolicy | None = None,
        prompt_builder: PromptBuilder | None = None,
        max_candidates: int = 8,
        expand_with_provider: bool = False,
    ) -> None:
        self._retriever = retriever
        self._provider = provider
        self._ledger = ledger
        self._policy = policy or AnswerQualityPolicy()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._max_candidates = max_candidates
        self._expand_with_provider = expand_with_provider
        self._logger = get_logger("query")

    @property
    def provider_name(self) -> str:
        return self._provider.name

    def answer(
        self,
        organization_id: str,
        request: AssistantQueryRequest,
        *,
        viewer_principal_keys: Sequence[str] | None = None,
    ) -> AssistantQueryResponse:
        retrieval_start = time.perf_counter()
        intent = classify_query_intent(request.query)
        candidates, filtered_out, fallback_used = self._collect_candidates(
            organization_id, request, viewer_principal_keys
        )
        sources = build_evidence_items(candidates)
        retrieval_score = compute_retrieval_score(sources)
        retrieval_ms = int(round((time.perf_counter() - retrieval_start) * 1000))

        chunk_text = {chunk.chunk_id: chunk.text for chunk in candidates}
        chunk_scores = {chunk.chunk_id: chunk.source_score for chunk in candidates}

        generation_start = time.perf_counter()
        if candidates:
            grounded, citations, grounding = self._generate(request, candidates, chunk_text)
        else:
            grounded = GroundedAnswer(answer=NO_CONTEXT_ANSWER, citations=(), confidence=0.2, source_score=0.0)
            citations = []
            grounding = GroundingAssessment(citation_coverage=0.0, unsupported_claim_count=0)
        generation_seconds = time.perf_counter() - generation_start
        PipelineMetrics.observe_generation(generation_seconds)

        claims = build_claims(grounded.answer, citations, chunk_text)
        traceability = compute_traceability(claims, sources, grounding.citation_coverage)

        contract = evaluate_answer_quality(
            QualityContractInput(
                citations=citations,
                citation_coverage=grounding.citation_coverage,
                unsupported_claims=grounding.unsupported_claim_count,
                candidate_count=len(candidates),
                viewer_principal_keys=viewer_principal_keys,
                citation_updated_at_by_chunk_id={chunk.chunk_id: chunk.updated_at for chunk in candidates},
                citation_principal_keys_by_chunk_id={chunk.chunk_id: chunk.principal_keys for chunk in candidates},
                allow_historical_evidence=request.allow_historical_evidence,
            ),
            self._policy,
        )
        answer_text = grounded.answer
        if contract.status == "blocked" and candidates:
            answer_text = BLOCKED_ANSWER

        citation_trust = average_citation_trust(citations, chunk_scores)
        confidence = compute_answer_confidence(
            grounded.confidence,
            retrieval_score,
            grounding.citation_coverage,
            citation_trust,
        )
        cited_scores = [chunk_scores.get(citation.chunk_id, 0.0) for citation in citations]
        source_score = (sum(cited_scores) / len(cited_scores)) if cited_scores else 0.0
        if not source_score:
            source_score = grounded.source_score

        response = AssistantQueryResponse(
            answer=answer_text,
            confidence=confidence,
            source_score=source_score,
            citations=citations,
            claims=claims,
            sources=sources,
            grounding=GroundingMeta(
                citation_coverage=grounding.citation_coverage,
                unsupported_claim_count=grounding.unsupported_claim_count,
                retrieval_score=retrieval_score,
            ),
            traceability=traceability,
            timings=Timings(retrieval_ms=retrieval_ms, generation_ms=int(round(generation_seconds * 1000))),
            verification=Verification(
                status=contract.status,
                reasons=contract.reasons,
                reason_codes=contract.reason_codes,
                citation_coverage=grounding.citation_coverage,
                unsupported_claims=grounding.unsupported_claim_count,
            ),
            permissions=PermissionsMeta(filtered_out_count=filtered_out),
            quality_contract=contract,
            mode=request.mode,
            model=self._provider.name,
            intent=intent,
            fallback_used=fallback_used,
            chunk_ids=tuple(chunk.chunk_id for chunk in candidates),
        )
        if self._ledger is not None:
            self._ledger.record(organization_id, contract)
        self._logger.info(
            "query.complete",
            organization_id=organization_id,
            mode=request.mode,
            intent=intent,
            candidate_count=len(candidates),
            citation_count=len(citations),
            verification_status=contract.status,
            retrieval_ms=retrieval_ms,
            generation_ms=response.timings.generation_ms,
        )
        return response

    def _collect_candidates(
        self,
        organization_id: str,
        request: AssistantQueryRequest,
        viewer_principal_keys: Sequence[str] | None,
    ) -> tuple[list[DocumentChunk], int, bool]:
        result = self._retriever.retrieve(
            RetrievalRequest(
                organization_id=organization_id,
                question=request.query,
                filters=request.filters,
                viewer_principal_keys=viewer_principal_keys,
            )
        )
        candidates: list[DocumentChunk] = list(result.chunks)
        filtered_out = result.filtered_out_count
        fallback_used = result.fallback_used
        if len(candidates) < VARIATION_TRIGGER:
            expanded = expand_query(request.query, self._provider if self._expand_with_provider else None)
            merged = {chunk.chunk_id: chunk for chunk in candidates}
            for variation in expanded.variations[1 : 1 + MAX_VARIATION_SEARCHES]:
                extra = self._retriever.retrieve(
                    RetrievalRequest(
                        organization_id=organization_id,
                        question=variation,
                        filters=request.filters,
                        viewer_principal_keys=viewer_principal_keys,
                    )
                )
                filtered_out = max(filtered_out, extra.filtered_out_count)
                for chunk in extra.chunks:
                    merged.setdefault(chunk.chunk_id, chunk)
            candidates = list(merged.values())[: self._max_candidates]
        return self._citable(candidates), filtered_out, fallback_used

    def _citable(self, candidates: Sequence[DocumentChunk]) -> list[DocumentChunk]:
        """Drop chunks that cannot back a valid citation, such as rows stored with a relative URL."""

        citable = [chunk for chunk in candidates if validate_citation(map_chunk_to_citation(chunk))]
        if len(citable) < len(candidates):
            self._logger.warning(
                "query.uncitable_chunks",
                dropped=[chunk.chunk_id for chunk in candidates if chunk not in citable],
            )
        return citable

    def _validated_answer(self, question: str, context: Sequence[ContextChunk]) -> GroundedAnswer:
        grounded = self._provider.answer_question(question, context)
        try:
            return validate_grounded_answer(grounded, provider=self._provider.name)
        except GenerationError:
            PipelineMetrics.observe_generation_failure(self._provider.name)
            raise

    def _generate(
        self,
        request: AssistantQueryRequest,
        candidates: Sequence[DocumentChunk],
        chunk_text: dict[str, str],
    ) -> tuple[GroundedAnswer, list[Citation], GroundingAssessment]:
        question = self._prompt_builder.build_question(request)
        context = self._prompt_builder.build_context(candidates)
        try:
            grounded = self._validated_answer(question, context)
            citations = list(grounded.citations)
            grounding = assess_grounding(grounded.answer, citations, chunk_text)
            if grounding.citation_coverage < MIN_GROUNDING_COVERAGE:
                retry = self._validated_answer(self._prompt_builder.strict(question), context)
                retry_citations = list(retry.citations)
                retry_grounding = assess_grounding(retry.answer, retry_citations, chunk_text)
                self._logger.info(
                    "generation.retry",
                    coverage=grounding.citation_coverage,
                    retry_coverage=retry_grounding.citation_coverage,
                )
                if retry_grounding.citation_coverage >= grounding.citation_coverage:
                    grounded, citations, grounding = retry, retry_citations, retry_grounding
        except GenerationError as exc:
            self._logger.warning(
                "generation.failed", provider=self._provider.name, detail=str(exc), errors=exc.errors
            )
            raise
        return grounded, citations, grounding
