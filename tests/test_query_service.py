from __future__ import annotations

from datetime import timedelta
from typing import Sequence

import pytest

from internalwiki.ingestion.service import DocumentIndexer, IndexDocumentRequest
from internalwiki.models import AssistantQueryRequest, Citation, ContextChunk, GroundedAnswer, utc_now
from internalwiki.quality.ledger import InMemoryQualityContractLedger
from internalwiki.retrieval.service import ChunkRetriever, RetrievalResult
from internalwiki.services.generation import NO_CONTEXT_ANSWER, GenerationError, MockAiProvider
from internalwiki.services.query import BLOCKED_ANSWER, AssistantQueryService, PromptBuilder, PromptBuilderConfig

REVIEW_TEXT = (
    "The payments security review happens every March. "
    "The platform team owns approvals for the review."
)


class ScriptedProvider:
    """Returns the scripted answers in order, citing the first context chunk."""

    name = "scripted"

    def __init__(self, answers: Sequence[str]) -> None:
        self.answers = list(answers)
        self.questions: list[str] = []

    def answer_question(self, question: str, context_chunks: Sequence[ContextChunk]) -> GroundedAnswer:
        self.questions.append(question)
        top = context_chunks[0]
        citation = Citation(top.chunk_id, top.doc_version_id, top.source_url, 0, len(top.text))
        return GroundedAnswer(answer=self.answers.pop(0), citations=(citation,), confidence=0.6, source_score=50)

    def summarize(self, content, citations):  # pragma: no cover - unused
        raise NotImplementedError


class FailingProvider:
    name = "failing"

    def answer_question(self, question, context_chunks):
        raise GenerationError("Provider answer failed schema validation", provider=self.name, errors=["answer: missing"])

    def summarize(self, content, citations):  # pragma: no cover - unused
        raise NotImplementedError


def _index(store, *, days_old: int = 1, principal_keys=()) -> None:
    DocumentIndexer(store).index(
        IndexDocumentRequest(
            organization_id="acme",
            document_id="security-review",
            title="Security Review Calendar",
            source_type="google_docs",
            source_url="https://docs.google.com/document/d/security-review",
            updated_at=(utc_now() - timedelta(days=days_old)).isoformat(),
            content=REVIEW_TEXT,
            author="Dana",
            principal_keys=principal_keys,
        )
    )


def _service(store, embedding_backend, provider=None, ledger=None) -> AssistantQueryService:
    retriever = ChunkRetriever(store, embedding_backend=embedding_backend)
    return AssistantQueryService(retriever, provider or MockAiProvider(), ledger=ledger)


def test_answer_passes_quality_contract_for_fresh_permitted_evidence(store, embedding_backend):
    _index(store)
    ledger = InMemoryQualityContractLedger()
    service = _service(store, embedding_backend, ledger=ledger)

    response = service.answer(
        "acme",
        AssistantQueryRequest(query="When is the payments security review?"),
        viewer_principal_keys=["org:acme"],
    )

    assert response.verification.status == "passed", response.verification.reason_codes
    assert response.answer.startswith("Grounded answer from https://docs.google.com/document/d/security-review")
    assert response.citations[0].chunk_id.startswith("security-review-")
    assert response.grounding.citation_coverage == 1.0
    assert all(claim.supported for claim in response.claims)
    assert response.sources[0].reason == "vector_similarity"
    assert response.permissions.filtered_out_count == 0
    assert response.model == "mock"
    assert 0.05 <= response.confidence <= 0.99
    assert response.source_score == response.sources[0].source_score
    assert ledger.summary("acme").total == 1

    payload = response.to_dict()
    assert payload["quality_contract"]["status"] == "passed"
    assert payload["permissions"]["acl_mode"] == "enforced"


def test_answer_without_viewer_identity_is_blocked(store, embedding_backend):
    _index(store)
    response = _service(store, embedding_backend).answer("acme", AssistantQueryRequest(query="security review"))
    assert response.answer == NO_CONTEXT_ANSWER
    assert response.citations == []
    assert response.verification.status == "blocked"
    assert "permission.missing_viewer_identity" in response.verification.reason_codes


def test_answer_hides_sources_outside_viewer_acl(store, embedding_backend):
    _index(store, principal_keys=("group:security",))
    response = _service(store, embedding_backend).answer(
        "acme",
        AssistantQueryRequest(query="security review"),
        viewer_principal_keys=["org:acme"],
    )
    assert response.sources == []
    assert response.permissions.filtered_out_count == 1
    assert "permission.no_permitted_evidence" in response.verification.reason_codes


def test_stale_evidence_is_blocked_unless_historical(store, embedding_backend):
    _index(store, days_old=200)
    service = _service(store, embedding_backend)

    strict = service.answer(
        "acme",
        AssistantQueryRequest(query="When is the payments security review?"),
        viewer_principal_keys=["org:acme"],
    )
    assert strict.answer == BLOCKED_ANSWER
    assert strict.verification.reason_codes == ["freshness.no_fresh_evidence"]

    historical = service.answer(
        "acme",
        AssistantQueryRequest(query="When is the payments security review?", allow_historical_evidence=True),
        viewer_principal_keys=["org:acme"],
    )
    assert historical.verification.status == "passed"
    assert historical.answer != BLOCKED_ANSWER


def test_low_coverage_answer_is_retried_with_strict_prompt(store, embedding_backend):
    _index(store)
    provider = ScriptedProvider(
        [
            "Zebras gallop wildly across distant savannahs.",
            "The payments security review happens every March.",
        ]
    )
    response = _service(store, embedding_backend, provider=provider).answer(
        "acme",
        AssistantQueryRequest(query="When is the payments security review?", mode="trace"),
        viewer_principal_keys=["org:acme"],
    )
    assert len(provider.questions) == 2
    assert "Strict grounding" in provider.questions[1]
    assert "evidence trace summary" in provider.questions[0]
    assert response.answer == "The payments security review happens every March."
    assert response.grounding.citation_coverage == 1.0


def test_generation_errors_propagate(store, embedding_backend):
    _index(store)
    with pytest.raises(GenerationError):
        _service(store, embedding_backend, provider=FailingProvider()).answer(
            "acme",
            AssistantQueryRequest(query="security review"),
            viewer_principal_keys=["org:acme"],
        )


def test_prompt_builder_caps_context_tokens(make_chunk):
    builder = PromptBuilder(PromptBuilderConfig(max_context_tokens=10))
    chunks = [make_chunk("a-0", "x" * 100), make_chunk("b-0", "y" * 8)]
    context = builder.build_context(chunks)
    assert [item.chunk_id for item in context] == ["a-0"]
    question = builder.build_question(AssistantQueryRequest(query="Summarize Q3", mode="summarize"))
    assert "executive summary" in question
    assert question.endswith("Question: Summarize Q3")


class MalformedProvider:
    """Returns an answer that breaks the answer schema in several fields."""

    name = "malformed"

    def answer_question(self, question, context_chunks):
        top = context_chunks[0]
        citation = Citation(top.chunk_id, top.doc_version_id, "not a url", 50, 5)
        return GroundedAnswer(answer=top.text, citations=(citation,), confidence=7.5, source_score=400)

    def summarize(self, content, citations):  # pragma: no cover - unused
        raise NotImplementedError


class ListRetriever:
    """Retriever stub serving fixed chunks and recording the questions it was asked."""

    def __init__(self, chunks) -> None:
        self.chunks = list(chunks)
        self.questions: list[str] = []

    def retrieve(self, request):
        self.questions.append(request.question)
        return RetrievalResult(chunks=self.chunks if len(self.questions) == 1 else [])


def test_schema_violations_are_rejected_before_the_quality_contract(store, embedding_backend):
    _index(store)
    ledger = InMemoryQualityContractLedger()
    with pytest.raises(GenerationError) as excinfo:
        _service(store, embedding_backend, provider=MalformedProvider(), ledger=ledger).answer(
            "acme",
            AssistantQueryRequest(query="When is the payments security review?"),
            viewer_principal_keys=["org:acme"],
        )
    errors = " ".join(excinfo.value.errors)
    assert "source_url" in errors
    assert "confidence" in errors
    assert "sourceScore" in errors
    assert ledger.summary("acme").total == 0


def test_schema_violations_on_the_strict_retry_are_rejected(store, embedding_backend):
    _index(store)

    class UnciteableRetry(ScriptedProvider):
        def answer_question(self, question, context_chunks):
            grounded = super().answer_question(question, context_chunks)
            if len(self.questions) == 1:
                return grounded
            return GroundedAnswer(answer=grounded.answer, citations=(), confidence=0.6, source_score=50)

    provider = UnciteableRetry(["Zebras gallop wildly across distant savannahs.", "Still unrelated."])
    with pytest.raises(GenerationError):
        _service(store, embedding_backend, provider=provider).answer(
            "acme",
            AssistantQueryRequest(query="When is the payments security review?"),
            viewer_principal_keys=["org:acme"],
        )
    assert len(provider.questions) == 2


def test_chunks_without_an_absolute_source_url_are_not_cited(make_chunk):
    relative = make_chunk("review-0", REVIEW_TEXT, source_url="wiki/security-review")
    service = AssistantQueryService(ListRetriever([relative]), MockAiProvider())

    response = service.answer(
        "acme",
        AssistantQueryRequest(query="security review"),
        viewer_principal_keys=["org:acme"],
    )
    assert response.citations == []
    assert response.sources == []
    assert response.answer == NO_CONTEXT_ANSWER
    assert response.verification.status == "blocked"


def test_provider_expansion_feeds_extra_searches(make_chunk):
    class ExpandingProvider(MockAiProvider):
        def answer_question(self, question, context_chunks):
            if not context_chunks:
                return GroundedAnswer(
                    answer="Payments review date\nSecurity audit calendar",
                    citations=(),
                    confidence=0.5,
                    source_score=0.0,
                )
            return super().answer_question(question, context_chunks)

    retriever = ListRetriever([make_chunk("review-0", REVIEW_TEXT)])
    service = AssistantQueryService(retriever, ExpandingProvider(), expand_with_provider=True)
    response = service.answer(
        "acme",
        AssistantQueryRequest(query="When is the review?"),
        viewer_principal_keys=["org:acme"],
    )
    assert retriever.questions == ["When is the review?", "Payments review date", "Security audit calendar"]
    assert [citation.chunk_id for citation in response.citations] == ["review-0"]

    rules = ListRetriever([make_chunk("review-0", REVIEW_TEXT)])
    AssistantQueryService(rules, ExpandingProvider()).answer(
        "acme",
        AssistantQueryRequest(query="When is the review?"),
        viewer_principal_keys=["org:acme"],
    )
    assert rules.questions == ["When is the review?", "what time is the review?", "what date is the review?"]
