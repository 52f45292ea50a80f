"""Driftline CLI.

Entry point for the ``driftline`` command-line tool.

Usage:
    driftline run                 [--scenarios PATH] [--profile PATH] [--gate-mode strict|warn|info] [--retry-once]
    driftline run-matrix          --matrix-contract PATH [--scenarios PATH]
    driftline capture             [--capture-profile baseline|candidate]
    driftline compare             [--baseline PATH] [--candidate PATH] [--baseline-id ID]
    driftline report              --comparison PATH
    driftline list-scenarios      [--scenario ID] [--tag TAG] [--shard-index N --shard-count M]
    driftline promote-baseline    [--candidate PATH] [--apply] [--approve] [--force]
    driftline migrate-legacy-runs [--legacy-runs-root DIR] [--legacy-run-dir DIR] [--apply] [--approve] [--force]

Exit status is 1 when the gate fails, when --apply was given but nothing
was written, or on any error.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from .core.canon import drop_none, to_workspace_relative_path, write_json_file
from .core.comparator import compare_replay_runs
from .core.determinism import DeterminismConfig, now_ms
from .core.documents import load_document
from .core.errors import ArtifactResolutionError, DriftlineError, SelectionError
from .core.gate import (
    evaluate_replay_gate,
    evaluate_replay_gate_with_retry,
    is_blocking,
    render_gate_summary_markdown,
    to_github_annotations,
)
from .core.orchestrator import ReplayOrchestrator
from .core.profile import ComparatorProfile, load_comparator_profile
from .core.report import render_replay_report_markdown, write_replay_report
from .core.scenario import Scenario, load_scenario_suite, select_scenarios
from .core.types import ComparisonResult, GateEvaluation, ProfileArtifacts
from .matrix.contract import load_matrix_run_contract
from .matrix.runner import run_replay_matrix
from .storage.golden import read_profile_artifacts
from .storage.promotion import PromotionApplied, PromotionOutcome, promote_baseline
from .storage.resolver import SOURCE_GOLDEN, ResolvedArtifact, resolve_replay_artifact

logger = logging.getLogger(__name__)

ASSETS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "assets")
DEFAULT_SCENARIOS = os.path.join(ASSETS_DIR, "baseline-scenarios.v1.json")
DEFAULT_PROFILE = os.path.join(ASSETS_DIR, "default.profile.json")

NO_MATCH_MESSAGE = "No scenarios matched the provided scenario/tag/shard filters."

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_selected_scenarios(args: argparse.Namespace, require_match: bool = True) -> List[Scenario]:
    suite = load_scenario_suite(args.scenarios)
    scenarios = select_scenarios(suite.scenarios, args.scenario, args.tag, args.shard_index, args.shard_count)
    if require_match and not scenarios:
        raise SelectionError(NO_MATCH_MESSAGE)
    return scenarios


def _orchestrator(args: argparse.Namespace) -> ReplayOrchestrator:
    return ReplayOrchestrator(args.out, determinism=args.determinism)


def _resolve(args: argparse.Namespace, kind: str, explicit_file: Optional[str]) -> Optional[ResolvedArtifact]:
    return resolve_replay_artifact(
        kind,
        goldens_root=args.goldens_root,
        baseline_id=args.baseline_id,
        legacy_runs_root=args.legacy_runs_root or args.out,
        explicit_file=explicit_file,
        legacy_run_dir=args.legacy_run_dir,
    )


def _write_gate_summary(
    output_dir: str,
    gate_output: Optional[str],
    markdown: str,
    payload: Dict[str, Any],
    workspace_path: Optional[str],
) -> Dict[str, str]:
    summary_path = os.path.abspath(gate_output) if gate_output else os.path.join(output_dir, "gate-summary.json")
    markdown_path = os.path.join(output_dir, "gate-summary.md")
    write_json_file(summary_path, payload)
    with open(markdown_path, "w", encoding="utf-8") as f:
        f.write(markdown + "\n")
    return {
        "summary_file": to_workspace_relative_path(summary_path, workspace_path),
        "markdown_file": to_workspace_relative_path(markdown_path, workspace_path),
    }


def _publish_gate(args: argparse.Namespace, gate: GateEvaluation, markdown: str) -> int:
    """Print gate output, append the step summary, return the exit status."""
    print(markdown)
    if args.emit_github_annotations:
        for line in to_github_annotations(gate):
            print(line)

    step_summary = os.environ.get("GITHUB_STEP_SUMMARY")
    if step_summary:
        with open(step_summary, "a", encoding="utf-8") as f:
            f.write(markdown + "\n\n")

    return 0 if gate.passed else 1


def _finish_comparison(
    args: argparse.Namespace,
    output_dir: str,
    comparison: ComparisonResult,
    gate: GateEvaluation,
    extra: Optional[Dict[str, Any]] = None,
) -> int:
    report = write_replay_report(output_dir, comparison, args.workspace_path)
    markdown = render_gate_summary_markdown(gate)
    payload = {
        "gate": gate.to_dict(),
        "explainability_rollup": gate.explainability_rollup.to_dict() if gate.explainability_rollup else None,
        "report": report.to_dict(),
    }
    payload.update(extra or {})
    artifacts = _write_gate_summary(output_dir, args.gate_output, markdown, drop_none(payload), args.workspace_path)

    print(f"Comparison: {report.comparison_json}")
    print(f"Markdown report: {report.report_markdown}")
    status = _publish_gate(args, gate, markdown)
    print(f"Gate summary JSON: {artifacts['summary_file']}")
    print(f"Gate summary Markdown: {artifacts['markdown_file']}")
    return status


def _print_promotion(outcome: PromotionOutcome, label: str) -> None:
    summary = outcome.summary
    print(f"Store location: {outcome.location.baseline_dir}")
    print(f"Existing baseline: {'yes' if summary.has_existing_baseline else 'no'}")
    print(f"Candidate scenarios: {summary.total_candidate_scenarios}")
    print(f"Added scenarios: {len(summary.added_scenarios)}")
    print(f"Removed scenarios: {len(summary.removed_scenarios)}")
    print(f"Changed scenarios: {len(summary.changed_scenarios)}")
    print(f"Unchanged scenarios: {len(summary.unchanged_scenarios)}")
    for scenario_id, delta in sorted(summary.event_count_deltas.items()):
        print(f"  {scenario_id}: event count delta {delta:+d}")
    if isinstance(outcome, PromotionApplied):
        print(f"{label} applied.")
        print(f"Baseline artifact: {outcome.baseline_artifact_file}")
        print(f"Metadata: {outcome.metadata_file}")
    else:
        print(f"{label} not applied: {outcome.guard_reason}")


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    scenarios = _load_selected_scenarios(args)
    profile = load_comparator_profile(args.profile)
    orchestrator = _orchestrator(args)

    result = orchestrator.run(scenarios, args.label, args.workspace_path)
    comparison = compare_replay_runs(scenarios, result.baseline, result.candidate, profile)

    retry_comparison = None
    if args.retry_once and is_blocking(comparison):
        logger.info("Primary comparison is blocking; retrying once")
        retry = orchestrator.run(scenarios, f"{args.label}-retry", args.workspace_path)
        retry_comparison = compare_replay_runs(scenarios, retry.baseline, retry.candidate, profile)

    gate = evaluate_replay_gate_with_retry(comparison, retry_comparison, args.gate_mode)
    flake_controls = drop_none(
        {
            "retry_once_enabled": args.retry_once,
            "retry_performed": retry_comparison is not None,
            "retry_summary": retry_comparison.summary.to_dict() if retry_comparison else None,
        }
    )

    print("Replay run complete.")
    print(f"Manifest: {os.path.join(result.output_dir, 'manifest.json')}")
    return _finish_comparison(args, result.output_dir, comparison, gate, {"flake_controls": flake_controls})


def _cmd_capture(args: argparse.Namespace) -> int:
    scenarios = _load_selected_scenarios(args)
    result = _orchestrator(args).capture(args.capture_profile, scenarios, args.label, args.workspace_path)

    print(f"Capture complete ({args.capture_profile}).")
    print(f"Artifact: {to_workspace_relative_path(result.output_file, args.workspace_path)}")
    print(f"Raw artifact: {to_workspace_relative_path(result.raw_output_file, args.workspace_path)}")
    return 0


def _cmd_compare(args: argparse.Namespace) -> int:
    baseline_ref = _resolve(args, "baseline", args.baseline)
    candidate_ref = _resolve(args, "candidate", args.candidate)
    if baseline_ref is None or candidate_ref is None:
        raise ArtifactResolutionError(
            "compare command could not resolve artifacts. Provide --baseline and --candidate, "
            "or use --baseline-id plus --legacy-runs-root/--legacy-run-dir for legacy replay outputs."
        )

    scenarios = _load_selected_scenarios(args)
    profile = load_comparator_profile(args.profile)
    baseline: ProfileArtifacts = read_profile_artifacts(baseline_ref.file)
    candidate: ProfileArtifacts = read_profile_artifacts(candidate_ref.file)

    comparison = compare_replay_runs(scenarios, baseline, candidate, profile)
    gate = evaluate_replay_gate(comparison, args.gate_mode)
    output_dir = os.path.join(os.path.abspath(args.out), f"{args.label}-{now_ms()}")

    print("Comparison complete.")
    print(f"Resolved baseline ({baseline_ref.source}): {baseline_ref.file}")
    print(f"Resolved candidate ({candidate_ref.source}): {candidate_ref.file}")
    return _finish_comparison(args, output_dir, comparison, gate)


def _cmd_report(args: argparse.Namespace) -> int:
    if not args.comparison:
        raise ArtifactResolutionError("report command requires --comparison <comparison.json>.")

    comparison = ComparisonResult.from_dict(load_document(args.comparison))
    output_dir = os.path.join(os.path.abspath(args.out), f"{args.label}-{now_ms()}")
    os.makedirs(output_dir, exist_ok=True)
    report_path = os.path.join(output_dir, "report.md")
    with open(report_path, "w", encoding="utf-8") as f:
        f.write(render_replay_report_markdown(comparison) + "\n")

    print(f"Report rendered: {report_path}")
    return 0


def _cmd_run_matrix(args: argparse.Namespace) -> int:
    if not args.matrix_contract:
        raise ArtifactResolutionError("run-matrix command requires --matrix-contract <matrix-contract.json>.")

    contract = load_matrix_run_contract(args.matrix_contract)
    scenarios = _load_selected_scenarios(args)
    contract_dir = os.path.dirname(os.path.abspath(args.matrix_contract))
    profiles: Dict[str, ComparatorProfile] = {}
    for ref in contract.comparator_profiles:
        path = ref.profile_path if os.path.isabs(ref.profile_path) else os.path.join(contract_dir, ref.profile_path)
        profiles[ref.profile_id] = load_comparator_profile(path)

    output = run_replay_matrix(
        args.out,
        args.label,
        contract,
        scenarios,
        profiles,
        workspace_path=args.workspace_path,
    )
    report = output.report
    print("Replay matrix run complete.")
    print(f"Matrix ID: {report.matrix_id}")
    print(f"Total cells: {report.total_cells}")
    print(f"Promotable cells: {report.promotable_cells}")
    print(f"Deterministic regressions: {report.deterministic_regressions}")
    print(f"Matrix report JSON: {output.output_file}")
    print(f"Matrix report Markdown: {output.markdown_file}")
    return 0


def _cmd_list_scenarios(args: argparse.Namespace) -> int:
    for scenario in _load_selected_scenarios(args, require_match=False):
        tags = f" [{', '.join(scenario.tags)}]" if scenario.tags else ""
        print(f"{scenario.scenario_id}: {scenario.title}{tags}")
    return 0


def _promote(args: argparse.Namespace, resolved: ResolvedArtifact) -> PromotionOutcome:
    return promote_baseline(
        resolved.file,
        args.goldens_root,
        args.baseline_id,
        apply=args.apply,
        approve=args.approve,
        force=args.force,
    )


def _cmd_promote_baseline(args: argparse.Namespace) -> int:
    resolved = _resolve(args, "baseline", args.candidate)
    if resolved is None:
        raise ArtifactResolutionError(
            "promote-baseline command requires --candidate <baseline.norm.json>, "
            "or legacy run artifacts resolvable via --legacy-runs-root/--legacy-run-dir."
        )

    outcome = _promote(args, resolved)
    print(f"Baseline id: {outcome.summary.baseline_id}")
    print(f"Resolved source ({resolved.source}): {resolved.file}")
    _print_promotion(outcome, "Promotion")
    return 1 if args.apply and not outcome.applied else 0


def _cmd_migrate_legacy_runs(args: argparse.Namespace) -> int:
    resolved = _resolve(args, "baseline", args.candidate)
    if resolved is None or resolved.source == SOURCE_GOLDEN:
        raise ArtifactResolutionError(
            "migrate-legacy-runs requires a legacy baseline artifact. Provide --candidate or "
            "--legacy-runs-root/--legacy-run-dir pointing to historical replay run output."
        )

    outcome = _promote(args, resolved)
    print(f"Legacy migration baseline id: {outcome.summary.baseline_id}")
    print(f"Resolved legacy source ({resolved.source}): {resolved.file}")
    if resolved.legacy_run_dir:
        print(f"Legacy run directory: {resolved.legacy_run_dir}")
    _print_promotion(outcome, "Migration")
    return 1 if args.apply and not outcome.applied else 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--scenarios", default=DEFAULT_SCENARIOS, help="Scenario suite (JSON or YAML)")
    common.add_argument("--profile", default=DEFAULT_PROFILE, help="Comparator profile (JSON or YAML)")
    common.add_argument("--out", default=".replay-runs", help="Output root (default: .replay-runs)")
    common.add_argument("--label", default="replay", help="Run label (default: replay)")
    common.add_argument("--workspace-path", help="Base for workspace-relative paths")
    common.add_argument("--scenario", action="append", help="Scenario id filter (repeatable)")
    common.add_argument(
        "--tag",
        action="append",
        type=lambda v: v.strip().lower(),
        help="Tag filter, any-match (repeatable)",
    )
    common.add_argument("--shard-index", type=int)
    common.add_argument("--shard-count", type=int)
    common.add_argument("--capture-profile", choices=["baseline", "candidate"], default="baseline")
    common.add_argument("--baseline", help="Baseline artifact file")
    common.add_argument("--candidate", help="Candidate artifact file")
    common.add_argument("--comparison", help="comparison.json to render")
    common.add_argument("--baseline-id", default="default")
    common.add_argument("--goldens-root", default="goldens")
    common.add_argument("--gate-mode", default="warn", help="strict, warn or info (default: warn)")
    common.add_argument("--gate-output", help="Path for the gate summary JSON")
    common.add_argument("--emit-github-annotations", action="store_true")
    common.add_argument("--retry-once", action="store_true", help="Retry once when the gate would block")
    common.add_argument("--legacy-runs-root", help="Legacy runs root (default: --out)")
    common.add_argument("--legacy-run-dir")
    common.add_argument("--apply", action="store_true")
    common.add_argument("--approve", action="store_true")
    common.add_argument("--force", action="store_true")
    common.add_argument("--matrix-contract", help="Matrix run contract (JSON or YAML)")
    common.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    return common


COMMANDS = {
    "run": (_cmd_run, "Capture baseline and candidate, compare and gate"),
    "run-matrix": (_cmd_run_matrix, "Run the pipeline across a matrix contract"),
    "capture": (_cmd_capture, "Capture a single profile"),
    "compare": (_cmd_compare, "Compare resolved baseline and candidate artifacts"),
    "report": (_cmd_report, "Render report.md from a comparison.json"),
    "list-scenarios": (_cmd_list_scenarios, "List selected scenarios"),
    "promote-baseline": (_cmd_promote_baseline, "Promote a baseline artifact into the golden store"),
    "migrate-legacy-runs": (_cmd_migrate_legacy_runs, "Migrate a legacy run baseline into the golden store"),
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="driftline",
        description="Driftline: deterministic replay and drift detection for agent tool-calling traces",
    )
    subparsers = parser.add_subparsers(dest="command")
    common = _common_parser()
    for name, (func, help_text) in COMMANDS.items():
        sub = subparsers.add_parser(name, parents=[common], help=help_text)
        sub.set_defaults(func=func)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    args.determinism = DeterminismConfig.from_env()

    try:
        status = args.func(args)
    except (DriftlineError, OSError) as exc:
        print(f"driftline: error: {exc}", file=sys.stderr)
        sys.exit(1)

    if status:
        sys.exit(status)


if __name__ == "__main__":
    main()
