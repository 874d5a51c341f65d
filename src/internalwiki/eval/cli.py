"""CLI running the retrieval benchmark as a CI regression gate."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Sequence

from internalwiki.cache import build_cache_client
from internalwiki.config import Settings, get_settings
from internalwiki.dependencies import build_dependencies
from internalwiki.eval.benchmark import RETRIEVAL_BENCHMARK_CASES
from internalwiki.eval.harness import (
    EvalConfigurationError,
    JsonEvalRunRecorder,
    RetrievalEvalCase,
    RetrievalEvalRunResult,
    run_retrieval_eval_benchmark,
    service_executor,
)
from internalwiki.metrics.observability import configure_logging


def load_cases(path: Path) -> list[RetrievalEvalCase]:
    data = json.loads(path.read_text(encoding="utf-8"))
    items = data.get("cases", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise EvalConfigurationError(f"{path} must contain a list of cases")
    return [RetrievalEvalCase.from_dict(item) for item in items]


def run_evaluation(
    organization_id: str,
    *,
    cases: Sequence[RetrievalEvalCase] = RETRIEVAL_BENCHMARK_CASES,
    threshold_good_pct: float | None = None,
    settings: Settings | None = None,
    viewer_principal_keys: Sequence[str] | None = None,
    persist: bool = True,
    json_out: Path | None = None,
    markdown_out: Path | None = None,
) -> RetrievalEvalRunResult:
    settings = settings or get_settings()
    cache = build_cache_client(settings)
    cache.connect()
    try:
        deps = build_dependencies(settings, cache=cache)
        result = run_retrieval_eval_benchmark(
            organization_id,
            cases,
            threshold_good_pct=(
                threshold_good_pct if threshold_good_pct is not None else settings.evaluation_threshold_good_pct
            ),
            execute_query=service_executor(
                deps.query_service,
                viewer_principal_keys=viewer_principal_keys or [f"org:{organization_id}"],
            ),
            recorder=JsonEvalRunRecorder(settings.evaluation_report_dir) if persist else None,
            actor_id=settings.evaluation_actor_id,
        )
    finally:
        cache.close()

    if json_out:
        json_out.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    if markdown_out:
        markdown_out.write_text(_format_markdown(result), encoding="utf-8")
    return result


def _format_markdown(result: RetrievalEvalRunResult) -> str:
    lines = [
        "# InternalWiki Retrieval Evaluation Report",
        "",
        f"- Organization: {result.organization_id}",
        f"- Run id: {result.run_id or 'n/a'}",
        f"- Cases: {result.total_cases} (good {result.good_cases}, bad {result.bad_cases}, unknown {result.unknown_cases})",
        f"- Score: {result.score_good_pct:.1f}% (threshold {result.threshold_good_pct:.1f}%)",
        f"- Pass: {result.pass_threshold}",
        "",
        "| Case | Verdict | Coverage | Reasons |",
        "| --- | --- | --- | --- |",
    ]
    for item in result.results:
        reasons = "; ".join(item.reasons) if item.reasons else "-"
        lines.append(f"| {item.id} | {item.verdict} | {item.citation_coverage:.2f} | {reasons} |")
    return "\n".join(lines)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the InternalWiki retrieval benchmark.")
    parser.add_argument("--org-id", type=str, default=None, help="Organization to evaluate")
    parser.add_argument("--threshold", type=float, default=None, help="Minimum good-case percentage")
    parser.add_argument("--cases", type=Path, default=None, help="Optional JSON file with eval cases")
    parser.add_argument(
        "--viewer-principal",
        action="append",
        default=None,
        help="Principal key used as the viewer identity (repeatable)",
    )
    parser.add_argument("--json-out", type=Path, default=None, help="Optional path to write JSON report")
    parser.add_argument("--markdown-out", type=Path, default=None, help="Optional path to write Markdown report")
    parser.add_argument("--no-persist", action="store_true", help="Skip writing the run record")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    configure_logging()
    settings = get_settings()
    organization_id = args.org_id or settings.evaluation_org_id
    if not organization_id:
        print("Set --org-id or INTERNALWIKI_EVALUATION_ORG_ID to run the benchmark.", file=sys.stderr)
        return 2

    cases = load_cases(args.cases) if args.cases else list(RETRIEVAL_BENCHMARK_CASES)
    result = run_evaluation(
        organization_id,
        cases=cases,
        threshold_good_pct=args.threshold,
        settings=settings,
        viewer_principal_keys=args.viewer_principal,
        persist=not args.no_persist,
        json_out=args.json_out,
        markdown_out=args.markdown_out,
    )
    print(json.dumps(result.to_dict(), indent=2))

    if not result.pass_threshold:
        print(
            f"Retrieval quality regression: score {result.score_good_pct:.1f}% "
            f"below threshold {result.threshold_good_pct:.1f}%",
            file=sys.stderr,
        )
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    sys.exit(main())
