"""
Replay gate: turn a comparison into a CI verdict.

Modes:
- strict: fails on a deterministic regression; a regression that recovers
  on a single retry is labeled an intermittent flake and does not fail
- warn:   always passes, emitting warning annotations for drifts
- info:   always passes, emitting notice annotations for drifts

A comparison is blocking when it did not pass or carries any high-severity
drift.
"""

from __future__ import annotations

from typing import List, Optional

from .determinism import Clock, utc_now_iso
from .types import (
    AnnotationLevel,
    ComparisonResult,
    GateAnnotation,
    GateClassification,
    GateEvaluation,
    GateMode,
    GateStatus,
)

LEVEL_BY_MODE = {
    GateMode.STRICT: AnnotationLevel.ERROR,
    GateMode.WARN: AnnotationLevel.WARNING,
    GateMode.INFO: AnnotationLevel.NOTICE,
}


def normalize_gate_mode(value: Optional[str]) -> GateMode:
    """Trim and lower-case; unknown or missing values fall back to warn."""
    try:
        return GateMode((value or "warn").strip().lower())
    except ValueError:
        return GateMode.WARN


def is_blocking(comparison: ComparisonResult) -> bool:
    return not comparison.passed or comparison.summary.high_severity_drifts > 0


def drift_fingerprint(comparison: ComparisonResult) -> str:
    tokens = sorted(
        f"{d.scenario_id}|{d.check_id}|{d.severity.value}|{d.message}" for d in comparison.all_drifts()
    )
    return "||".join(tokens)


def _classify(primary_blocking: bool, retried: bool, retry_blocking: bool) -> GateClassification:
    if primary_blocking and retried and not retry_blocking:
        return GateClassification.INTERMITTENT_FLAKE
    if primary_blocking:
        return GateClassification.DETERMINISTIC_REGRESSION
    return GateClassification.CLEAN


def _triage_labels(
    classification: GateClassification, mode: GateMode, same_fingerprint: bool
) -> List[str]:
    gate_label = f"gate:{mode.value}"
    if classification == GateClassification.INTERMITTENT_FLAKE:
        return ["replay", "intermittent", "flake", gate_label]
    if classification == GateClassification.DETERMINISTIC_REGRESSION:
        fingerprint_label = "stable-fingerprint" if same_fingerprint else "changed-fingerprint"
        return ["replay", "deterministic-regression", gate_label, fingerprint_label]
    return ["replay", "clean", gate_label]


def _status_and_reason(mode: GateMode, classification: GateClassification, annotated: bool):
    if mode == GateMode.STRICT:
        if classification == GateClassification.DETERMINISTIC_REGRESSION:
            return False, GateStatus.FAIL, "Strict gate failed due to deterministic replay regression."
        if classification == GateClassification.INTERMITTENT_FLAKE:
            return True, GateStatus.WARN, "Strict gate retried once and recovered; labeling as intermittent flake."
        return True, GateStatus.PASS, "Strict gate passed with no blocking replay drift."

    if mode == GateMode.WARN:
        if annotated:
            return True, GateStatus.WARN, "Warn gate allows CI to pass while emitting replay drift annotations."
        return True, GateStatus.PASS, "Warn gate passed with no replay drift annotations."

    if annotated:
        return True, GateStatus.INFO, "Info gate collected replay drift insights without failing CI."
    return True, GateStatus.PASS, "Info gate passed with no replay drift annotations."


def evaluate_replay_gate_with_retry(
    primary: ComparisonResult,
    retry: Optional[ComparisonResult],
    mode: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> GateEvaluation:
    """Evaluate the gate, classifying flakes when a retry comparison exists."""
    gate_mode = normalize_gate_mode(mode)
    retried = retry is not None
    primary_blocking = is_blocking(primary)
    retry_blocking = is_blocking(retry) if retry is not None else False
    classification = _classify(primary_blocking, retried, retry_blocking)
    same_fingerprint = drift_fingerprint(primary) == drift_fingerprint(retry) if retry is not None else True

    level = LEVEL_BY_MODE[gate_mode]
    annotations = [
        GateAnnotation(
            level=level,
            scenario_id=scenario.scenario_id,
            check_id=drift.check_id,
            severity=drift.severity,
            message=drift.message,
            evidence_refs=list(drift.evidence.artifact_refs) if drift.evidence else None,
            evidence_fingerprint=drift.evidence.fingerprint if drift.evidence else None,
        )
        for scenario in primary.scenarios
        for drift in scenario.drifts
    ]

    passed, status, reason = _status_and_reason(gate_mode, classification, bool(annotations))
    return GateEvaluation(
        mode=gate_mode,
        passed=passed,
        status=status,
        reason=reason,
        classification=classification,
        triage_labels=_triage_labels(classification, gate_mode, same_fingerprint),
        retried=retried,
        annotations=annotations,
        summary=primary.summary,
        explainability_rollup=primary.summary.explainability_rollup,
        generated_at=utc_now_iso(clock),
    )


def evaluate_replay_gate(
    comparison: ComparisonResult, mode: Optional[str] = None, clock: Optional[Clock] = None
) -> GateEvaluation:
    return evaluate_replay_gate_with_retry(comparison, None, mode, clock)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def render_gate_summary_markdown(evaluation: GateEvaluation) -> str:
    summary = evaluation.summary
    return "\n".join(
        [
            "## Replay Gate Summary",
            "",
            f"- Mode: {evaluation.mode.value}",
            f"- Status: {evaluation.status.value}",
            f"- Passed: {_yes_no(evaluation.passed)}",
            f"- Reason: {evaluation.reason}",
            f"- Classification: {evaluation.classification.value}",
            f"- Retried: {_yes_no(evaluation.retried)}",
            f"- Triage labels: {', '.join(evaluation.triage_labels)}",
            f"- Total scenarios: {summary.total_scenarios}",
            f"- Failed scenarios: {summary.failed_scenarios}",
            f"- High drifts: {summary.high_severity_drifts}",
            f"- Medium drifts: {summary.medium_severity_drifts}",
            f"- Low drifts: {summary.low_severity_drifts}",
            f"- Annotation count: {len(evaluation.annotations)}",
        ]
    )


def _evidence_suffix(annotation: GateAnnotation) -> str:
    tokens: List[str] = []
    refs = [r.strip().replace("\\", "/") for r in annotation.evidence_refs or []]
    refs = [r for r in refs if r]
    if refs:
        tokens.append(f"evidence_refs={'|'.join(refs)}")
    if annotation.evidence_fingerprint:
        tokens.append(f"evidence_fingerprint={annotation.evidence_fingerprint}")
    return f" [{' '.join(tokens)}]" if tokens else ""


def to_github_annotations(evaluation: GateEvaluation) -> List[str]:
    """Render annotations as GitHub Actions workflow commands."""
    return [
        f"::{a.level.value} title=Replay Gate ({a.severity.value.upper()})::"
        f"[{evaluation.classification.value}] {a.scenario_id} {a.check_id} {a.message}"
        f"{_evidence_suffix(a)}"
        for a in evaluation.annotations
    ]
