"""AI provider seam for grounded answer generation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Protocol, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from internalwiki.config import Settings
from internalwiki.metrics.observability import PipelineMetrics, get_logger
from internalwiki.models import Citation, ContextChunk, GroundedAnswer, is_absolute_http_url

LOGGER = get_logger("generation")

DEFAULT_MODEL = "gpt-4.1-mini"
NO_CONTEXT_ANSWER = "No relevant context found."


class GenerationError(RuntimeError):
    """Raised when a provider call fails or its output does not match the answer schema."""

    def __init__(self, message: str, *, provider: str = "unknown", errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.provider = provider
        self.errors = list(errors)


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    citations: Sequence[Citation] = field(default_factory=tuple)


class AiProvider(Protocol):
    """Protocol describing answer generation behaviour."""

    name: str

    def answer_question(self, question: str, context_chunks: Sequence[ContextChunk]) -> GroundedAnswer:
        """Return a grounded answer for the question using only the supplied context."""

    def summarize(self, content: str, citations: Sequence[Citation]) -> SummaryResult:
        """Return a summary of ``content`` carrying the given citations."""


class CitationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chunk_id: str = Field(..., alias="chunkId", min_length=1)
    doc_version_id: str = Field(..., alias="docVersionId", min_length=1)
    source_url: str = Field(..., alias="sourceUrl")
    start_offset: int = Field(..., alias="startOffset", ge=0, strict=True)
    end_offset: int = Field(..., alias="endOffset", ge=0, strict=True)

    @field_validator("source_url")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        if not is_absolute_http_url(value):
            raise ValueError("source_url must be an absolute http(s) URL")
        return value

    @model_validator(mode="after")
    def _ordered_offsets(self) -> "CitationPayload":
        if self.end_offset < self.start_offset:
            raise ValueError("end_offset must not precede start_offset")
        return self


class GroundedAnswerPayload(BaseModel):
    """Schema every provider response must satisfy before it is used."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    answer: str = Field(..., min_length=1)
    citations: List[CitationPayload] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    source_score: float = Field(..., alias="sourceScore", ge=0.0, le=100.0)


def _field_messages(exc: ValidationError) -> list[str]:
    return [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]


def parse_grounded_answer(payload: Mapping[str, Any] | str, *, provider: str = "unknown") -> GroundedAnswer:
    """Validate raw provider output; anything malformed raises ``GenerationError``."""

    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise GenerationError("Provider returned a non-JSON answer", provider=provider, errors=[str(exc)]) from exc
    if not isinstance(payload, Mapping):
        raise GenerationError("Provider answer must be a JSON object", provider=provider)
    try:
        parsed = GroundedAnswerPayload.model_validate(payload)
    except ValidationError as exc:
        raise GenerationError(
            "Provider answer failed schema validation",
            provider=provider,
            errors=_field_messages(exc),
        ) from exc
    return GroundedAnswer(
        answer=parsed.answer,
        citations=tuple(
            Citation(
                chunk_id=item.chunk_id,
                doc_version_id=item.doc_version_id,
                source_url=item.source_url,
                start_offset=item.start_offset,
                end_offset=item.end_offset,
            )
            for item in parsed.citations
        ),
        confidence=parsed.confidence,
        source_score=parsed.source_score,
    )


def validate_grounded_answer(grounded: GroundedAnswer, *, provider: str = "unknown") -> GroundedAnswer:
    """Run an answer from any provider through the same schema as raw provider output."""

    return parse_grounded_answer(
        {
            "answer": grounded.answer,
            "citations": [
                {
                    "chunkId": citation.chunk_id,
                    "docVersionId": citation.doc_version_id,
                    "sourceUrl": citation.source_url,
                    "startOffset": citation.start_offset,
                    "endOffset": citation.end_offset,
                }
                for citation in grounded.citations
            ],
            "confidence": grounded.confidence,
            "sourceScore": grounded.source_score,
        },
        provider=provider,
    )


class MockAiProvider:
    """Deterministic provider used for tests and offline environments."""

    name = "mock"

    def answer_question(self, question: str, context_chunks: Sequence[ContextChunk]) -> GroundedAnswer:
        if not context_chunks:
            return GroundedAnswer(answer=NO_CONTEXT_ANSWER, citations=(), confidence=0.2, source_score=0.0)
        top = context_chunks[0]
        return GroundedAnswer(
            answer=f"Grounded answer from {top.source_url}: {top.text[:200]}",
            citations=(
                Citation(
                    chunk_id=top.chunk_id,
                    doc_version_id=top.doc_version_id,
                    source_url=top.source_url,
                    start_offset=0,
                    end_offset=min(180, len(top.text)),
                ),
            ),
            confidence=0.78,
            source_score=top.source_score,
        )

    def summarize(self, content: str, citations: Sequence[Citation]) -> SummaryResult:
        return SummaryResult(summary=content[:500], citations=tuple(citations))


class OpenAiProvider:
    """Provider calling the OpenAI Responses API with a bounded timeout."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._client = client

    def answer_question(self, question: str, context_chunks: Sequence[ContextChunk]) -> GroundedAnswer:
        formatted_context = "\n\n".join(
            f"chunk:{chunk.chunk_id} version:{chunk.doc_version_id} url:{chunk.source_url} "
            f"score:{chunk.source_score} {chunk.text}"
            for chunk in context_chunks
        )
        prompt = "\n\n".join(
            [
                "Answer only using provided context. Include citations for every claim.",
                "Return JSON object with keys: answer, citations, confidence, sourceScore. "
                "Each citation has chunkId, docVersionId, sourceUrl, startOffset, endOffset.",
                f"Question: {question}",
                f"Context:\n{formatted_context}",
            ]
        )
        try:
            body = self._post({"model": self._model, "input": prompt, "text": {"format": {"type": "json_object"}}})
            return parse_grounded_answer(self._output_text(body), provider=self.name)
        except GenerationError as exc:
            PipelineMetrics.observe_generation_failure(self.name)
            LOGGER.warning("generation.failed", provider=self.name, detail=str(exc), errors=exc.errors)
            raise

    def summarize(self, content: str, citations: Sequence[Citation]) -> SummaryResult:
        return SummaryResult(summary=f"Summary (generated): {content[:4000]}", citations=tuple(citations))

    def _post(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        owns_client = self._client is None
        client = self._client or httpx.Client(timeout=self._timeout)
        try:
            response = client.post(
                f"{self._base_url}/responses",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json=dict(payload),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise GenerationError(f"OpenAI request failed: {exc}", provider=self.name) from exc
        finally:
            if owns_client:
                client.close()
        if response.status_code >= 400:
            raise GenerationError(f"OpenAI error ({response.status_code})", provider=self.name)
        try:
            body = response.json()
        except ValueError as exc:
            raise GenerationError("OpenAI returned a non-JSON body", provider=self.name) from exc
        if not isinstance(body, Mapping):
            raise GenerationError("OpenAI returned an unexpected body", provider=self.name)
        return body

    @staticmethod
    def _output_text(body: Mapping[str, Any]) -> str:
        text = body.get("output_text")
        if isinstance(text, str) and text:
            return text
        output = body.get("output") or []
        if not isinstance(output, list):
            raise GenerationError("OpenAI output is not a list", provider=OpenAiProvider.name)
        for item in output:
            if not isinstance(item, Mapping):
                raise GenerationError("OpenAI output item is not an object", provider=OpenAiProvider.name)
            contents = item.get("content") or []
            if not isinstance(contents, list):
                raise GenerationError("OpenAI output content is not a list", provider=OpenAiProvider.name)
            for content in contents:
                if not isinstance(content, Mapping):
                    continue
                candidate = content.get("text")
                if isinstance(candidate, str) and candidate:
                    return candidate
        return ""


def get_ai_provider(settings: Settings) -> AiProvider:
    """OpenAI when an API key is configured, otherwise the deterministic mock."""

    if settings.use_openai:
        LOGGER.info("generation.provider", provider="openai", model=settings.openai_model)
        return OpenAiProvider(
            settings.openai_api_key or "",
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout_seconds=settings.provider_timeout_seconds,
        )
    LOGGER.info("generation.provider", provider="mock")
    return MockAiProvider()
