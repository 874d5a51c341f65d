"""Stable retrieval benchmark cases."""

from __future__ import annotations

from internalwiki.eval.harness import RetrievalEvalCase

RETRIEVAL_BENCHMARK_CASES: tuple[RetrievalEvalCase, ...] = (
    RetrievalEvalCase(
        id="owners-onboarding-policy",
        query="Who owns onboarding policy approvals this quarter?",
        mode="ask",
        expected_any_answer_phrases=("owner", "approval"),
    ),
    RetrievalEvalCase(
        id="summarize-launch-risks",
        query="Summarize current launch risks and accountable teams.",
        mode="summarize",
        expected_any_answer_phrases=("risk", "team"),
    ),
    RetrievalEvalCase(
        id="trace-escalation-change",
        query="Trace where incident severity escalation v14 was approved.",
        mode="trace",
        expected_any_answer_phrases=("approved", "version"),
    ),
    RetrievalEvalCase(
        id="api-dependency-status",
        query="What are unresolved API dependency blockers from product reviews?",
        mode="ask",
        expected_any_answer_phrases=("blocker", "dependency"),
    ),
    RetrievalEvalCase(
        id="q1-decision-summary",
        query="Summarize Q1 planning decisions and explicit tradeoffs.",
        mode="summarize",
        expected_any_answer_phrases=("decision", "tradeoff"),
    ),
    RetrievalEvalCase(
        id="trace-pricing-exception",
        query="Trace who approved the latest pricing exception policy update.",
        mode="trace",
        expected_any_answer_phrases=("approved", "policy"),
    ),
    RetrievalEvalCase(
        id="support-handoff-owners",
        query="Which teams own support handoff and SLA escalation?",
        mode="ask",
        expected_any_answer_phrases=("team", "handoff"),
    ),
    RetrievalEvalCase(
        id="security-review-summary",
        query="Summarize the current security review checklist and decision owners.",
        mode="summarize",
        expected_any_answer_phrases=("security", "owner"),
    ),
    RetrievalEvalCase(
        id="trace-soc2-control",
        query="Trace the source for SOC2 control ownership updates.",
        mode="trace",
        expected_any_answer_phrases=("source", "ownership"),
    ),
    RetrievalEvalCase(
        id="oncall-incident-policy",
        query="What changed in on-call incident escalation policy this month?",
        mode="ask",
        expected_any_answer_phrases=("changed", "policy"),
    ),
)
