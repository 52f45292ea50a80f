"""
Report writer: comparison.json/report.md for a replay run and
matrix-report.json/matrix-report.md for a matrix run.

Rendering is pure; writers create the output directory and return
workspace-relative paths of what they wrote.
"""

from __future__ import annotations

import os
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional

from .canon import to_workspace_relative_path, write_json_file
from .types import TAXONOMY_ORDER, ComparisonResult, Confidence, Drift, OperatorBucket

if TYPE_CHECKING:
    from ..matrix.scoring import MatrixReport

CONFIDENCE_ORDER = [c.value for c in Confidence]
BUCKET_ORDER = [b.value for b in OperatorBucket]
TOP_ACTION_LIMIT = 5


@dataclass(frozen=True)
class ReportOutput:
    comparison_json: str
    report_markdown: str

    def to_dict(self) -> Dict[str, str]:
        return {"comparison_json": self.comparison_json, "report_markdown": self.report_markdown}


@dataclass(frozen=True)
class MatrixReportOutput:
    output_file: str
    markdown_file: str


def _write_text(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        f.write("\n")


# =============================================================================
# Replay report
# =============================================================================


def render_replay_report_markdown(comparison: ComparisonResult) -> str:
    summary = comparison.summary
    lines = [
        "# Replay Drift Report",
        "",
        f"- Generated at: {comparison.generated_at}",
        f"- Comparator profile: {comparison.profile_name}",
        f"- Overall result: {'PASS' if comparison.passed else 'FAIL'}",
        "",
        "## Summary",
        "",
        f"- Total scenarios: {summary.total_scenarios}",
        f"- Passed scenarios: {summary.passed_scenarios}",
        f"- Failed scenarios: {summary.failed_scenarios}",
        f"- High severity drifts: {summary.high_severity_drifts}",
        f"- Medium severity drifts: {summary.medium_severity_drifts}",
        f"- Low severity drifts: {summary.low_severity_drifts}",
        "",
        "## Scenario Results",
        "",
    ]

    for scenario in comparison.scenarios:
        lines.append(f"### {scenario.scenario_id} - {'PASS' if scenario.passed else 'FAIL'}")
        lines.append("")
        lines.append(f"- Checks executed: {len(scenario.checks_executed)}")
        if not scenario.drifts:
            lines.append("- Drift findings: none")
            lines.append("")
            continue
        lines.append("- Drift findings:")
        for drift in scenario.drifts:
            lines.append(f"  - [{drift.severity.value.upper()}] {drift.check_id}: {drift.message}")
        lines.append("")

    lines.extend(_render_explainability(comparison))
    return "\n".join(lines)


def _drift_is_annotated(drift: Drift) -> bool:
    return drift.is_explained or drift.remediation is not None or drift.evidence is not None


def _has_explainability(comparison: ComparisonResult) -> bool:
    if comparison.summary.explainability_rollup is not None:
        return True
    return any(
        scenario.explainability_groups or any(_drift_is_annotated(d) for d in scenario.drifts)
        for scenario in comparison.scenarios
    )


def _count_map(counts: Mapping[str, int], order: Iterable[str]) -> Optional[str]:
    entries = [f"{key} {counts[key]}" for key in order if key in counts]
    return ", ".join(entries) if entries else None


def _render_explainability(comparison: ComparisonResult) -> List[str]:
    if not _has_explainability(comparison):
        return []

    lines = ["## Explainability", ""]
    rollup = comparison.summary.explainability_rollup
    if rollup is not None:
        lines.extend(["### Rollup", ""])
        lines.append(f"- Explained drifts: {rollup.total_explained_drifts}")
        for label, counts, order in (
            ("By category", rollup.by_category, [c.value for c in TAXONOMY_ORDER]),
            ("By confidence", rollup.by_confidence, CONFIDENCE_ORDER),
            ("By operator bucket", rollup.by_operator_bucket, BUCKET_ORDER),
        ):
            rendered = _count_map(counts, order)
            if rendered:
                lines.append(f"- {label}: {rendered}")
        lines.append("")

    grouped = [s for s in comparison.scenarios if s.explainability_groups]
    if grouped:
        lines.extend(["### Group Summaries", ""])
        for scenario in grouped:
            lines.append(f"#### {scenario.scenario_id}")
            for g in scenario.explainability_groups or []:
                lines.append(
                    f"- {g.category.value}: {g.total_drifts} drift(s)"
                    f"; confidence high {g.high_confidence}, medium {g.medium_confidence}, low {g.low_confidence}"
                    f"; buckets blocker {g.blocker_bucket}, actionable {g.actionable_bucket}, monitor {g.monitor_bucket}"
                )
            lines.append("")

    top_actions = collect_top_actions(comparison)
    if top_actions:
        lines.extend(["### Top Actions", ""])
        lines.extend(f"- {action}" for action in top_actions)
        lines.append("")

    handles = collect_evidence_handles(comparison)
    if handles:
        lines.extend(["### Evidence Handles", ""])
        lines.extend(f"- {handle}" for handle in handles)
        lines.append("")

    return lines


def collect_top_actions(comparison: ComparisonResult, limit: int = TOP_ACTION_LIMIT) -> List[str]:
    """Most frequent recommended actions, ties broken alphabetically."""
    frequency: Counter = Counter()
    for drift in comparison.all_drifts():
        if drift.remediation is None:
            continue
        for action in drift.remediation.recommended_actions:
            if action.strip():
                frequency[action.strip()] += 1
    ranked = sorted(frequency.items(), key=lambda item: (-item[1], item[0]))
    return [f"{action} (x{count})" for action, count in ranked[:limit]]


def collect_evidence_handles(comparison: ComparisonResult) -> List[str]:
    handles = set()
    for drift in comparison.all_drifts():
        if drift.evidence is None:
            continue
        fingerprint = (drift.evidence.fingerprint or "").strip()
        if fingerprint:
            handles.add(f"fingerprint:{fingerprint}")
        for ref in drift.evidence.artifact_refs:
            normalized = ref.strip().replace("\\", "/")
            if normalized:
                handles.add(f"artifact:{normalized}")
    return sorted(handles)


def write_replay_report(
    output_dir: str, comparison: ComparisonResult, workspace_path: Optional[str] = None
) -> ReportOutput:
    absolute = os.path.abspath(output_dir)
    os.makedirs(absolute, exist_ok=True)
    json_path = os.path.join(absolute, "comparison.json")
    markdown_path = os.path.join(absolute, "report.md")

    write_json_file(json_path, comparison.to_dict())
    _write_text(markdown_path, render_replay_report_markdown(comparison))

    return ReportOutput(
        comparison_json=to_workspace_relative_path(json_path, workspace_path),
        report_markdown=to_workspace_relative_path(markdown_path, workspace_path),
    )


# =============================================================================
# Matrix report
# =============================================================================


def render_matrix_report_markdown(report: "MatrixReport") -> str:
    lines = [
        "# Replay Matrix Report",
        "",
        f"- Matrix ID: {report.matrix_id}",
        f"- Generated at: {report.generated_at}",
        f"- Run label: {report.run_label}",
        f"- Total cells: {report.total_cells}",
        f"- Promotable cells: {report.promotable_cells}",
        f"- Deterministic regressions: {report.deterministic_regressions}",
        "",
        "## Risk Tier Summary",
        "",
    ]
    for tier in report.risk_tier_summary:
        lines.append(
            f"- {tier.risk_tier}: cells={tier.cell_count}, promotable={tier.promotable_cells}, "
            f"deterministic_regressions={tier.deterministic_regressions}"
        )

    lines.extend(["", "## Cell Results", ""])
    for cell in report.cells:
        score = cell.score
        lines.append(f"### {cell.cell_id}")
        lines.append(f"- Scenarios: {len(cell.scenario_ids)}")
        lines.append(f"- Gate: {cell.gate.status.value} ({cell.gate.classification.value})")
        lines.append(f"- Promotable: {'yes' if cell.promotable else 'no'}")
        lines.append(
            f"- Score: WDS={_num(score.wds)}, SPR={_num(score.spr)}, ECI={_num(score.eci)}, "
            f"BBR={_num(score.bbr)}, CMS={_num(score.cms)}"
        )
        lines.append("")
    return "\n".join(lines)


def _num(value: float) -> str:
    """Render like a JSON number: integral floats without a trailing .0."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def write_matrix_report(
    output_dir: str, report: "MatrixReport", workspace_path: Optional[str] = None
) -> MatrixReportOutput:
    absolute = os.path.abspath(output_dir)
    os.makedirs(absolute, exist_ok=True)
    json_path = os.path.join(absolute, "matrix-report.json")
    markdown_path = os.path.join(absolute, "matrix-report.md")

    write_json_file(json_path, report.to_dict())
    _write_text(markdown_path, render_matrix_report_markdown(report))

    return MatrixReportOutput(
        output_file=to_workspace_relative_path(json_path, workspace_path),
        markdown_file=to_workspace_relative_path(markdown_path, workspace_path),
    )
