"""
Drift comparator: classify behavioral differences between a baseline and a
candidate capture of the same scenario suite.

Scenarios are compared in suite order. Each declared check contributes zero
or more drifts; every drift is then enriched (see explain.py) and the
scenario's acceptance thresholds are evaluated against the enriched set.

A scenario missing from either capture is not an error: it yields a single
high-severity scenario-presence drift and no executed checks.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .determinism import Clock, utc_now_iso
from .explain import build_explainability_groups, build_explainability_rollup, enrich_drift
from .profile import ComparatorProfile
from .scenario import CheckSpec, Scenario
from .types import (
    CheckType,
    ComparisonResult,
    ComparisonSummary,
    Drift,
    EventType,
    ProfileArtifacts,
    ScenarioComparison,
    ScenarioRunArtifact,
    Severity,
    TraceEvent,
)

SCENARIO_PRESENCE_CHECK = "scenario-presence"


def _drift(
    scenario: Scenario,
    check: CheckSpec,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    severity: Optional[Severity] = None,
) -> Drift:
    return Drift(
        scenario_id=scenario.scenario_id,
        check_id=check.id,
        severity=severity or check.severity,
        message=message,
        details=details,
    )


def has_ordered_subsequence(required: Sequence[str], observed: Sequence[str]) -> bool:
    """True if required appears in observed in order, gaps allowed."""
    if not required:
        return True
    cursor = 0
    for value in observed:
        if value == required[cursor]:
            cursor += 1
            if cursor == len(required):
                return True
    return False


# =============================================================================
# tool_order
# =============================================================================


def tool_actions(events: Sequence[TraceEvent], profile: ComparatorProfile) -> List[Tuple[str, str]]:
    ignored = {t.strip().lower() for t in profile.ignore_optional_tools}
    actions = [
        (
            (e.tool_name or "unknown").strip().lower(),
            (e.action_canonical or e.action_raw or "unknown").strip().lower(),
        )
        for e in events
        if e.event_type == EventType.TOOL_CALL
    ]
    return [(tool, action) for tool, action in actions if tool not in ignored]


def compare_tool_order(
    scenario: Scenario,
    baseline: Sequence[TraceEvent],
    candidate: Sequence[TraceEvent],
    check: CheckSpec,
    profile: ComparatorProfile,
) -> List[Drift]:
    baseline_actions = [a for _, a in tool_actions(baseline, profile)]
    candidate_actions = [a for _, a in tool_actions(candidate, profile)]
    strict = check.strict_order if check.strict_order is not None else profile.strict_default
    details = {"baseline_actions": baseline_actions, "candidate_actions": candidate_actions}

    if strict and baseline_actions != candidate_actions:
        return [_drift(scenario, check, "Tool call order drift detected under strict ordering.", details)]

    if not strict and not has_ordered_subsequence(baseline_actions, candidate_actions):
        return [
            _drift(
                scenario,
                check,
                "Tool call sequence drift detected (candidate does not preserve baseline action order).",
                details,
            )
        ]

    for action in baseline_actions:
        if action not in candidate_actions:
            return [_drift(scenario, check, f"Candidate trace is missing required tool action '{action}'.", details)]

    baseline_counts = Counter(baseline_actions)
    candidate_counts = Counter(candidate_actions)
    extras = [a for a, n in candidate_counts.items() if n > baseline_counts.get(a, 0)]
    if extras:
        return [
            _drift(
                scenario,
                check,
                f"Candidate trace contains unexpected extra tool actions: {', '.join(extras)}.",
                {**details, "unexpected_actions": extras},
            )
        ]

    return []


# =============================================================================
# auth_outcome
# =============================================================================


def _auth_records(events: Sequence[TraceEvent]) -> List[Dict[str, Any]]:
    return [
        {
            "action": e.action_canonical or e.action_raw or e.event_type,
            "outcome": e.authorization.outcome,
            "reason_class": e.authorization.reason_class,
        }
        for e in events
        if e.authorization is not None
    ]


def compare_authorization(
    scenario: Scenario,
    baseline: Sequence[TraceEvent],
    candidate: Sequence[TraceEvent],
    check: CheckSpec,
    profile: ComparatorProfile,
) -> List[Drift]:
    baseline_auth = _auth_records(baseline)
    candidate_auth = _auth_records(candidate)
    drifts: List[Drift] = []

    for index, (b, c) in enumerate(zip(baseline_auth, candidate_auth)):
        if b["outcome"] != c["outcome"]:
            drifts.append(
                _drift(
                    scenario, check, f"Authorization outcome drift at index {index}.", {"baseline": b, "candidate": c}
                )
            )
        if profile.compare_reason_class and b["reason_class"] != c["reason_class"]:
            drifts.append(
                _drift(
                    scenario, check, f"Authorization reason-class drift at index {index}.", {"baseline": b, "candidate": c}
                )
            )

    if len(baseline_auth) != len(candidate_auth):
        drifts.append(
            _drift(
                scenario,
                check,
                "Authorization event count drift detected.",
                {"baseline_count": len(baseline_auth), "candidate_count": len(candidate_auth)},
            )
        )
    return drifts


# =============================================================================
# flow
# =============================================================================


def expected_surface_sequence(check: CheckSpec) -> List[str]:
    if isinstance(check.expected, str):
        values: List[Any] = [check.expected]
    elif isinstance(check.expected, list):
        values = list(check.expected)
    else:
        values = []
    from_metadata = (check.metadata or {}).get("expected_selected_surfaces")
    if isinstance(from_metadata, list):
        values.extend(from_metadata)
    return [v.strip().lower() for v in values if isinstance(v, str) and v.strip()]


def compare_flow(
    scenario: Scenario,
    candidate: Sequence[TraceEvent],
    check: CheckSpec,
    profile: ComparatorProfile,
) -> List[Drift]:
    drifts: List[Drift] = []
    event_types = [e.event_type for e in candidate]

    if profile.require_handoff_before_complete:
        ordered = has_ordered_subsequence([EventType.HANDOFF, EventType.COMPLETE], event_types)
        if EventType.COMPLETE in event_types and not ordered:
            drifts.append(_drift(scenario, check, "Expected handoff event before complete event was not observed."))

    if profile.require_confirmation_before_gated_updates:
        if EventType.PLAN_STEP_UPDATE in event_types and EventType.CONFIRMATION not in event_types:
            drifts.append(
                _drift(
                    scenario,
                    check,
                    "Plan step updates occurred without a confirmation event.",
                    severity=Severity.MEDIUM,
                )
            )

    target = profile.required_handoff_target
    for event in candidate:
        observed = (event.payload or {}).get("to_agent")
        if event.event_type == EventType.HANDOFF and observed != target:
            rendered = observed if observed is not None else "<none>"
            drifts.append(
                _drift(
                    scenario,
                    check,
                    f"Unexpected handoff target '{rendered}'; expected '{target}'.",
                    {"observed_target": observed, "expected_target": target},
                )
            )
            break

    expected = expected_surface_sequence(check)
    if expected:
        observed_surfaces = []
        for event in candidate:
            selected = (event.payload or {}).get("selected_terminal_surface")
            if event.event_type == EventType.TOOL_CALL and isinstance(selected, str) and selected.strip():
                observed_surfaces.append(selected.strip().lower())

        strict = check.strict_order is True
        if strict:
            matched = has_ordered_subsequence(expected, observed_surfaces)
        else:
            matched = all(s in observed_surfaces for s in expected)
        if not matched:
            drifts.append(
                _drift(
                    scenario,
                    check,
                    "Selected terminal surface order did not match expected flow sequence."
                    if strict
                    else "Expected selected terminal surfaces were not observed in flow events.",
                    {"expected_selected_surfaces": expected, "observed_selected_surfaces": observed_surfaces},
                )
            )
    return drifts


# =============================================================================
# success_signature
# =============================================================================


def compare_success_signatures(
    scenario: Scenario,
    candidate: Sequence[TraceEvent],
    check: CheckSpec,
    profile: ComparatorProfile,
) -> List[Drift]:
    observed: List[str] = []
    for event in candidate:
        if event.success_signature and event.success_signature not in observed:
            observed.append(event.success_signature)

    required = list(scenario.expectations.success_signature.must_include)
    missing = [s for s in required if s not in observed]
    if not missing:
        return []
    return [
        _drift(
            scenario,
            check,
            f"Missing required success signatures: {', '.join(missing)}",
            {"required": required, "observed": observed},
        )
    ]


# =============================================================================
# Thresholds and per-scenario comparison
# =============================================================================

_THRESHOLDS = (
    ("max_total_drifts", "drift-threshold-total", Severity.HIGH, None, "observed_total"),
    ("max_high_severity_drifts", "drift-threshold-high", Severity.HIGH, Severity.HIGH, "observed_high"),
    ("max_medium_severity_drifts", "drift-threshold-medium", Severity.MEDIUM, Severity.MEDIUM, "observed_medium"),
    ("max_low_severity_drifts", "drift-threshold-low", Severity.LOW, Severity.LOW, "observed_low"),
)


def compare_acceptance_thresholds(scenario: Scenario, drifts: Sequence[Drift]) -> List[Drift]:
    thresholds = scenario.acceptance_thresholds
    if thresholds is None:
        return []

    results: List[Drift] = []
    for field_name, check_id, severity, counted, observed_key in _THRESHOLDS:
        limit = getattr(thresholds, field_name)
        observed = len([d for d in drifts if counted is None or d.severity == counted])
        if limit is not None and observed > limit:
            results.append(
                Drift(
                    scenario_id=scenario.scenario_id,
                    check_id=check_id,
                    severity=severity,
                    message=f"Scenario exceeded {field_name} threshold ({observed} > {limit}).",
                    details={observed_key: observed, "threshold": limit},
                )
            )
    return results


def compare_scenario(
    scenario: Scenario,
    baseline: ScenarioRunArtifact,
    candidate: ScenarioRunArtifact,
    profile: ComparatorProfile,
) -> ScenarioComparison:
    checks = scenario.expectations.checks
    b_events = baseline.normalized_events
    c_events = candidate.normalized_events

    raw_drifts: List[Drift] = []
    for check in checks:
        if check.type == CheckType.TOOL_ORDER:
            raw_drifts.extend(compare_tool_order(scenario, b_events, c_events, check, profile))
        elif check.type == CheckType.AUTH_OUTCOME:
            raw_drifts.extend(compare_authorization(scenario, b_events, c_events, check, profile))
        elif check.type == CheckType.FLOW:
            raw_drifts.extend(compare_flow(scenario, c_events, check, profile))
        elif check.type == CheckType.SUCCESS_SIGNATURE:
            raw_drifts.extend(compare_success_signatures(scenario, c_events, check, profile))

    by_id: Dict[str, CheckSpec] = {}
    for check in checks:
        by_id.setdefault(check.id, check)

    enriched = [
        enrich_drift(d, by_id.get(d.check_id), baseline.profile, candidate.profile, b_events, c_events)
        for d in raw_drifts
    ]
    threshold_drifts = [
        enrich_drift(d, None, baseline.profile, candidate.profile, b_events, c_events)
        for d in compare_acceptance_thresholds(scenario, enriched)
    ]
    drifts = enriched + threshold_drifts

    return ScenarioComparison(
        scenario_id=scenario.scenario_id,
        passed=not drifts,
        drifts=drifts,
        checks_executed=[c.id for c in checks],
        explainability_groups=build_explainability_groups(drifts),
    )


def _missing_artifact_comparison(
    scenario: Scenario,
    baseline_artifacts: ProfileArtifacts,
    candidate_artifacts: ProfileArtifacts,
    baseline_found: bool,
    candidate_found: bool,
) -> ScenarioComparison:
    drift = Drift(
        scenario_id=scenario.scenario_id,
        check_id=SCENARIO_PRESENCE_CHECK,
        severity=Severity.HIGH,
        message="Baseline or candidate artifacts are missing for this scenario.",
        details={"baseline_found": baseline_found, "candidate_found": candidate_found},
    )
    enriched = enrich_drift(drift, None, baseline_artifacts.profile, candidate_artifacts.profile)
    return ScenarioComparison(
        scenario_id=scenario.scenario_id,
        passed=False,
        drifts=[enriched],
        checks_executed=[],
        explainability_groups=build_explainability_groups([enriched]),
    )


def summarize(scenarios: Sequence[ScenarioComparison]) -> ComparisonSummary:
    drifts = [d for s in scenarios for d in s.drifts]
    return ComparisonSummary(
        total_scenarios=len(scenarios),
        passed_scenarios=len([s for s in scenarios if s.passed]),
        failed_scenarios=len([s for s in scenarios if not s.passed]),
        high_severity_drifts=len([d for d in drifts if d.severity == Severity.HIGH]),
        medium_severity_drifts=len([d for d in drifts if d.severity == Severity.MEDIUM]),
        low_severity_drifts=len([d for d in drifts if d.severity == Severity.LOW]),
        explainability_rollup=build_explainability_rollup(drifts),
    )


def compare_replay_runs(
    scenarios: Sequence[Scenario],
    baseline: ProfileArtifacts,
    candidate: ProfileArtifacts,
    profile: Optional[ComparatorProfile] = None,
    clock: Optional[Clock] = None,
) -> ComparisonResult:
    """Compare two captures over a suite.

    Passed iff no scenario failed and no drift is high severity.
    """
    profile = profile or ComparatorProfile()
    comparisons: List[ScenarioComparison] = []

    for scenario in scenarios:
        b = baseline.get(scenario.scenario_id)
        c = candidate.get(scenario.scenario_id)
        if b is None or c is None:
            comparisons.append(
                _missing_artifact_comparison(scenario, baseline, candidate, b is not None, c is not None)
            )
            continue
        comparisons.append(compare_scenario(scenario, b, c, profile))

    summary = summarize(comparisons)
    return ComparisonResult(
        generated_at=utc_now_iso(clock),
        profile_name=profile.profile_name,
        passed=summary.failed_scenarios == 0 and summary.high_severity_drifts == 0,
        scenarios=comparisons,
        summary=summary,
    )
