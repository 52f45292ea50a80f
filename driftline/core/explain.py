"""
Drift explainability: taxonomy category, confidence band, operator bucket,
remediation text and evidence handles.

All derivations are pure functions of the drift, the matching check (if
any) and the two scenario artifacts' normalized events.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, List, Optional, Sequence

from .canon import sha256_hex
from .scenario import CheckSpec
from .types import (
    TAXONOMY_ORDER,
    CheckType,
    Confidence,
    Drift,
    DriftCategory,
    DriftEvidence,
    DriftRemediation,
    ExplainabilityGroup,
    ExplainabilityRollup,
    OperatorBucket,
    Severity,
    TraceEvent,
)

CATEGORY_BY_CHECK_TYPE = {
    CheckType.TOOL_ORDER: DriftCategory.TOOL_SEQUENCE,
    CheckType.AUTH_OUTCOME: DriftCategory.AUTHORIZATION_POLICY,
    CheckType.FLOW: DriftCategory.FLOW_PROTOCOL,
    CheckType.SUCCESS_SIGNATURE: DriftCategory.SUCCESS_SIGNATURE,
}

# First row whose keywords appear in "{check_id} {message}" wins
CATEGORY_KEYWORDS = (
    (("scenario-presence", "artifact"), DriftCategory.ARTIFACT_INTEGRITY),
    (("auth",), DriftCategory.AUTHORIZATION_POLICY),
    (("tool", "order", "sequence"), DriftCategory.TOOL_SEQUENCE),
    (("handoff", "complete", "confirmation", "flow"), DriftCategory.FLOW_PROTOCOL),
    (("signature",), DriftCategory.SUCCESS_SIGNATURE),
)

BUCKET_BY_SEVERITY = {
    Severity.HIGH: OperatorBucket.BLOCKER,
    Severity.MEDIUM: OperatorBucket.ACTIONABLE,
    Severity.LOW: OperatorBucket.MONITOR,
}

REMEDIATION_TEXT = {
    DriftCategory.TOOL_SEQUENCE: (
        "Planner selected a different tool/action sequence than baseline.",
        "Compare baseline/candidate tool-action order and align decision flow.",
        "Re-run replay and confirm tool-order drift no longer appears.",
    ),
    DriftCategory.AUTHORIZATION_POLICY: (
        "Authorization policy outcome or reason-class changed.",
        "Inspect authorization rationale and policy envelopes for parity.",
        "Validate auth events and reason_class values match baseline expectations.",
    ),
    DriftCategory.FLOW_PROTOCOL: (
        "Required sequencing (confirmation/handoff/complete) was violated.",
        "Restore protocol ordering before gated updates and completion.",
        "Replay scenario and verify protocol event ordering checks pass.",
    ),
    DriftCategory.SUCCESS_SIGNATURE: (
        "Expected success signature tokens were missing from candidate run.",
        "Restore missing success-signature emitting path.",
        "Confirm must_include signatures are present in normalized candidate events.",
    ),
    DriftCategory.ARTIFACT_INTEGRITY: (
        "Required replay artifacts were missing or could not be resolved.",
        "Rebuild baseline/candidate artifacts and verify scenario coverage parity.",
        "Confirm artifacts exist for scenario {scenario_id} and rerun comparison.",
    ),
}


def infer_category(check_id: Optional[str], message: str) -> DriftCategory:
    token = f"{check_id or ''} {message}".lower()
    for keywords, category in CATEGORY_KEYWORDS:
        if any(k in token for k in keywords):
            return category
    return DriftCategory.ARTIFACT_INTEGRITY


def derive_category(check: Optional[CheckSpec], drift: Drift) -> DriftCategory:
    if check is not None:
        return CATEGORY_BY_CHECK_TYPE[check.type]
    return infer_category(drift.check_id, drift.message)


def derive_confidence(drift: Drift) -> Confidence:
    """Confidence grows with severity and with how much detail backs the drift."""
    detail_count = len(drift.details) if drift.details else 0
    if drift.severity == Severity.HIGH:
        return Confidence.HIGH if detail_count > 0 else Confidence.MEDIUM
    if drift.severity == Severity.MEDIUM:
        if detail_count >= 2:
            return Confidence.HIGH
        return Confidence.MEDIUM if detail_count > 0 else Confidence.LOW
    return Confidence.MEDIUM if detail_count >= 2 else Confidence.LOW


def remediation_for(category: DriftCategory, scenario_id: str) -> DriftRemediation:
    cause, action, verification = REMEDIATION_TEXT[category]
    return DriftRemediation(
        likely_causes=[cause],
        recommended_actions=[action],
        verification_steps=[verification.format(scenario_id=scenario_id)],
    )


def find_action_indexes(events: Sequence[TraceEvent], actions: object) -> Optional[List[int]]:
    """Positions of events whose action is one of actions, or None."""
    if not isinstance(actions, list) or not actions:
        return None
    expected = {str(a).strip().lower() for a in actions}
    indexes = [
        i
        for i, event in enumerate(events)
        if (event.action_canonical or event.action_raw or "").strip().lower() in expected
    ]
    return indexes or None


def evidence_ref(profile: str, scenario_id: str) -> str:
    return f"{profile}.norm.json#scenario:{scenario_id}".strip().replace("\\", "/")


def drift_fingerprint(drift: Drift) -> str:
    token = "|".join(
        [drift.scenario_id, drift.check_id, drift.severity.value, drift.message.strip().lower()]
    )
    return sha256_hex(token.encode("utf-8"))


def build_evidence(
    drift: Drift,
    baseline_profile: str,
    candidate_profile: str,
    baseline_events: Sequence[TraceEvent] = (),
    candidate_events: Sequence[TraceEvent] = (),
) -> DriftEvidence:
    details = drift.details or {}
    baseline_indexes = details.get("baseline_event_indexes")
    candidate_indexes = details.get("candidate_event_indexes")
    if not isinstance(baseline_indexes, list):
        baseline_indexes = find_action_indexes(baseline_events, details.get("baseline_actions"))
    if not isinstance(candidate_indexes, list):
        candidate_indexes = find_action_indexes(candidate_events, details.get("candidate_actions"))

    return DriftEvidence(
        baseline_event_indexes=baseline_indexes,
        candidate_event_indexes=candidate_indexes,
        artifact_refs=[
            evidence_ref(baseline_profile, drift.scenario_id),
            evidence_ref(candidate_profile, drift.scenario_id),
        ],
        fingerprint=drift_fingerprint(drift),
    )


def enrich_drift(
    drift: Drift,
    check: Optional[CheckSpec],
    baseline_profile: str,
    candidate_profile: str,
    baseline_events: Sequence[TraceEvent] = (),
    candidate_events: Sequence[TraceEvent] = (),
) -> Drift:
    category = derive_category(check, drift)
    return dataclasses.replace(
        drift,
        category=category,
        confidence=derive_confidence(drift),
        operator_bucket=BUCKET_BY_SEVERITY[drift.severity],
        remediation=remediation_for(category, drift.scenario_id),
        evidence=build_evidence(drift, baseline_profile, candidate_profile, baseline_events, candidate_events),
    )


# =============================================================================
# Aggregation
# =============================================================================

_CONFIDENCE_FIELD = {
    Confidence.HIGH: "high_confidence",
    Confidence.MEDIUM: "medium_confidence",
    Confidence.LOW: "low_confidence",
}

_BUCKET_FIELD = {
    OperatorBucket.BLOCKER: "blocker_bucket",
    OperatorBucket.ACTIONABLE: "actionable_bucket",
    OperatorBucket.MONITOR: "monitor_bucket",
}


def build_explainability_groups(drifts: Sequence[Drift]) -> Optional[List[ExplainabilityGroup]]:
    """Per-category counts in taxonomy order; None when there are no drifts."""
    if not drifts:
        return None

    counts: Dict[DriftCategory, Dict[str, int]] = {}
    for drift in drifts:
        if drift.category is None:
            continue
        current = counts.setdefault(
            drift.category,
            {"total_drifts": 0, **{f: 0 for f in _CONFIDENCE_FIELD.values()}, **{f: 0 for f in _BUCKET_FIELD.values()}},
        )
        current["total_drifts"] += 1
        if drift.confidence is not None:
            current[_CONFIDENCE_FIELD[drift.confidence]] += 1
        if drift.operator_bucket is not None:
            current[_BUCKET_FIELD[drift.operator_bucket]] += 1

    return [ExplainabilityGroup(category=c, **counts[c]) for c in TAXONOMY_ORDER if c in counts]


def build_explainability_rollup(drifts: Sequence[Drift]) -> Optional[ExplainabilityRollup]:
    """Counts across explained drifts; None when nothing is explained."""
    explained = [d for d in drifts if d.is_explained]
    if not explained:
        return None

    by_category: Dict[str, int] = {}
    by_confidence: Dict[str, int] = {}
    by_bucket: Dict[str, int] = {}
    for drift in explained:
        if drift.category is not None:
            by_category[drift.category.value] = by_category.get(drift.category.value, 0) + 1
        if drift.confidence is not None:
            by_confidence[drift.confidence.value] = by_confidence.get(drift.confidence.value, 0) + 1
        if drift.operator_bucket is not None:
            by_bucket[drift.operator_bucket.value] = by_bucket.get(drift.operator_bucket.value, 0) + 1

    return ExplainabilityRollup(
        total_explained_drifts=len(explained),
        by_category=by_category,
        by_confidence=by_confidence,
        by_operator_bucket=by_bucket,
    )
