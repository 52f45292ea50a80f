"""
Core record types for Driftline.

Traces, comparisons and gate evaluations are frozen dataclasses. Each has a
to_dict() producing the on-disk JSON shape (absent optional fields are
omitted, never written as null); types that are read back from disk also
provide from_dict().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .canon import drop_none

# =============================================================================
# Vocabularies
# =============================================================================


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CheckType(str, Enum):
    TOOL_ORDER = "tool_order"
    AUTH_OUTCOME = "auth_outcome"
    FLOW = "flow"
    SUCCESS_SIGNATURE = "success_signature"


class DriftCategory(str, Enum):
    FLOW_PROTOCOL = "flow_protocol"
    AUTHORIZATION_POLICY = "authorization_policy"
    TOOL_SEQUENCE = "tool_sequence"
    SUCCESS_SIGNATURE = "success_signature"
    ARTIFACT_INTEGRITY = "artifact_integrity"


# Fixed presentation order for groups, rollups and reports
TAXONOMY_ORDER: Tuple[DriftCategory, ...] = (
    DriftCategory.FLOW_PROTOCOL,
    DriftCategory.AUTHORIZATION_POLICY,
    DriftCategory.TOOL_SEQUENCE,
    DriftCategory.SUCCESS_SIGNATURE,
    DriftCategory.ARTIFACT_INTEGRITY,
)


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class OperatorBucket(str, Enum):
    BLOCKER = "blocker"
    ACTIONABLE = "actionable"
    MONITOR = "monitor"


class ProfileName(str, Enum):
    BASELINE = "baseline"
    CANDIDATE = "candidate"


class AuthOutcome(str, Enum):
    ALLOWED = "allowed"
    ALLOWED_WITH_WARNING = "allowed_with_warning"
    BLOCKED = "blocked"


class TerminalSurface(str, Enum):
    MEMORY_TERMINAL = "memory_terminal"
    MEMORY_TERMINAL_INTERACTIVE = "memory_terminal_interactive"
    AUTO = "auto"


class EventType(str, Enum):
    """Event types the synthetic runner emits and the comparator inspects.

    TraceEvent.event_type stays a plain string so adapter runners can emit
    additional types; members compare equal to their string values.
    """

    USER_PROMPT = "user_prompt"
    WAIT = "wait"
    TOOL_CALL = "tool_call"
    BUILD_SCRIPT_RESOLVED = "build_script_resolved"
    HANDOFF = "handoff"
    COMPLETE = "complete"
    CONFIRMATION = "confirmation"
    PLAN_STEP_UPDATE = "plan_step_update"
    OUTCOME = "outcome"


class GateMode(str, Enum):
    STRICT = "strict"
    WARN = "warn"
    INFO = "info"


class GateStatus(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    WARN = "WARN"
    INFO = "INFO"


class GateClassification(str, Enum):
    CLEAN = "clean"
    DETERMINISTIC_REGRESSION = "deterministic_regression"
    INTERMITTENT_FLAKE = "intermittent_flake"


class AnnotationLevel(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTICE = "notice"


def _enum_or_none(enum_cls, value):
    if value is None:
        return None
    return enum_cls(value)


# =============================================================================
# Trace events and artifacts
# =============================================================================


@dataclass(frozen=True)
class AuthorizationResult:
    outcome: str
    reason_class: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none({"outcome": self.outcome, "reason_class": self.reason_class})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthorizationResult":
        return cls(outcome=data.get("outcome"), reason_class=data.get("reason_class"))


@dataclass(frozen=True)
class TraceEvent:
    """One event emitted by a scenario runner (raw) or derived from it (normalized)."""

    event_type: str
    timestamp_ms: float
    scenario_id: str
    step_id: Optional[str] = None
    tool_name: Optional[str] = None
    action_raw: Optional[str] = None
    action_canonical: Optional[str] = None
    authorization: Optional[AuthorizationResult] = None
    phase: Optional[str] = None
    success_signature: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "event_type": self.event_type,
                "timestamp_ms": self.timestamp_ms,
                "scenario_id": self.scenario_id,
                "step_id": self.step_id,
                "tool_name": self.tool_name,
                "action_raw": self.action_raw,
                "action_canonical": self.action_canonical,
                "authorization": self.authorization.to_dict() if self.authorization else None,
                "phase": self.phase,
                "success_signature": self.success_signature,
                "payload": self.payload,
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TraceEvent":
        auth = data.get("authorization")
        return cls(
            event_type=data["event_type"],
            timestamp_ms=data.get("timestamp_ms", 0),
            scenario_id=data.get("scenario_id", ""),
            step_id=data.get("step_id"),
            tool_name=data.get("tool_name"),
            action_raw=data.get("action_raw"),
            action_canonical=data.get("action_canonical"),
            authorization=AuthorizationResult.from_dict(auth) if isinstance(auth, Mapping) else None,
            phase=data.get("phase"),
            success_signature=data.get("success_signature"),
            payload=dict(data["payload"]) if isinstance(data.get("payload"), Mapping) else None,
        )


@dataclass(frozen=True)
class ScenarioRunArtifact:
    """One scenario's captured trace for one profile."""

    scenario_id: str
    profile: str
    raw_events: List[TraceEvent] = field(default_factory=list)
    normalized_events: List[TraceEvent] = field(default_factory=list)
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenario_id": self.scenario_id,
            "profile": self.profile,
            "raw_events": [e.to_dict() for e in self.raw_events],
            "normalized_events": [e.to_dict() for e in self.normalized_events],
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScenarioRunArtifact":
        return cls(
            scenario_id=data["scenario_id"],
            profile=data.get("profile", ""),
            raw_events=[TraceEvent.from_dict(e) for e in data.get("raw_events", [])],
            normalized_events=[TraceEvent.from_dict(e) for e in data.get("normalized_events", [])],
            success=bool(data.get("success", False)),
        )


@dataclass(frozen=True)
class ProfileArtifacts:
    """All scenario artifacts of one profile from one capture run."""

    profile: str
    scenarios: List[ScenarioRunArtifact] = field(default_factory=list)

    def get(self, scenario_id: str) -> Optional[ScenarioRunArtifact]:
        for artifact in self.scenarios:
            if artifact.scenario_id == scenario_id:
                return artifact
        return None

    def scenario_ids(self) -> List[str]:
        return [artifact.scenario_id for artifact in self.scenarios]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "scenarios": [s.to_dict() for s in self.scenarios],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProfileArtifacts":
        return cls(
            profile=data.get("profile", ""),
            scenarios=[ScenarioRunArtifact.from_dict(s) for s in data.get("scenarios", [])],
        )


# =============================================================================
# Drifts and comparison results
# =============================================================================


@dataclass(frozen=True)
class DriftRemediation:
    likely_causes: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    verification_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "likely_causes": list(self.likely_causes),
            "recommended_actions": list(self.recommended_actions),
            "verification_steps": list(self.verification_steps),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DriftRemediation":
        return cls(
            likely_causes=list(data.get("likely_causes") or []),
            recommended_actions=list(data.get("recommended_actions") or []),
            verification_steps=list(data.get("verification_steps") or []),
        )


@dataclass(frozen=True)
class DriftEvidence:
    artifact_refs: List[str] = field(default_factory=list)
    fingerprint: Optional[str] = None
    baseline_event_indexes: Optional[List[int]] = None
    candidate_event_indexes: Optional[List[int]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "baseline_event_indexes": self.baseline_event_indexes,
                "candidate_event_indexes": self.candidate_event_indexes,
                "artifact_refs": list(self.artifact_refs),
                "fingerprint": self.fingerprint,
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DriftEvidence":
        return cls(
            artifact_refs=list(data.get("artifact_refs") or []),
            fingerprint=data.get("fingerprint"),
            baseline_event_indexes=data.get("baseline_event_indexes"),
            candidate_event_indexes=data.get("candidate_event_indexes"),
        )


@dataclass(frozen=True)
class Drift:
    """A behavioral difference found by one check for one scenario."""

    scenario_id: str
    check_id: str
    severity: Severity
    message: str
    details: Optional[Dict[str, Any]] = None
    category: Optional[DriftCategory] = None
    confidence: Optional[Confidence] = None
    operator_bucket: Optional[OperatorBucket] = None
    remediation: Optional[DriftRemediation] = None
    evidence: Optional[DriftEvidence] = None

    @property
    def is_explained(self) -> bool:
        return bool(self.category or self.confidence or self.operator_bucket)

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "scenario_id": self.scenario_id,
                "check_id": self.check_id,
                "severity": self.severity.value,
                "message": self.message,
                "details": self.details,
                "category": self.category.value if self.category else None,
                "confidence": self.confidence.value if self.confidence else None,
                "operator_bucket": self.operator_bucket.value if self.operator_bucket else None,
                "remediation": self.remediation.to_dict() if self.remediation else None,
                "evidence": self.evidence.to_dict() if self.evidence else None,
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Drift":
        remediation = data.get("remediation")
        evidence = data.get("evidence")
        return cls(
            scenario_id=data["scenario_id"],
            check_id=data["check_id"],
            severity=Severity(data["severity"]),
            message=data["message"],
            details=dict(data["details"]) if isinstance(data.get("details"), Mapping) else None,
            category=_enum_or_none(DriftCategory, data.get("category")),
            confidence=_enum_or_none(Confidence, data.get("confidence")),
            operator_bucket=_enum_or_none(OperatorBucket, data.get("operator_bucket")),
            remediation=DriftRemediation.from_dict(remediation) if isinstance(remediation, Mapping) else None,
            evidence=DriftEvidence.from_dict(evidence) if isinstance(evidence, Mapping) else None,
        )


@dataclass(frozen=True)
class ExplainabilityGroup:
    """Per-scenario drift counts for one taxonomy category."""

    category: DriftCategory
    total_drifts: int = 0
    high_confidence: int = 0
    medium_confidence: int = 0
    low_confidence: int = 0
    blocker_bucket: int = 0
    actionable_bucket: int = 0
    monitor_bucket: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "total_drifts": self.total_drifts,
            "high_confidence": self.high_confidence,
            "medium_confidence": self.medium_confidence,
            "low_confidence": self.low_confidence,
            "blocker_bucket": self.blocker_bucket,
            "actionable_bucket": self.actionable_bucket,
            "monitor_bucket": self.monitor_bucket,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExplainabilityGroup":
        return cls(
            category=DriftCategory(data["category"]),
            total_drifts=int(data.get("total_drifts", 0)),
            high_confidence=int(data.get("high_confidence", 0)),
            medium_confidence=int(data.get("medium_confidence", 0)),
            low_confidence=int(data.get("low_confidence", 0)),
            blocker_bucket=int(data.get("blocker_bucket", 0)),
            actionable_bucket=int(data.get("actionable_bucket", 0)),
            monitor_bucket=int(data.get("monitor_bucket", 0)),
        )


@dataclass(frozen=True)
class ExplainabilityRollup:
    """Cross-scenario counts of explained drifts."""

    total_explained_drifts: int
    by_category: Dict[str, int] = field(default_factory=dict)
    by_confidence: Dict[str, int] = field(default_factory=dict)
    by_operator_bucket: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_explained_drifts": self.total_explained_drifts,
            "by_category": dict(self.by_category),
            "by_confidence": dict(self.by_confidence),
            "by_operator_bucket": dict(self.by_operator_bucket),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExplainabilityRollup":
        return cls(
            total_explained_drifts=int(data.get("total_explained_drifts", 0)),
            by_category=dict(data.get("by_category") or {}),
            by_confidence=dict(data.get("by_confidence") or {}),
            by_operator_bucket=dict(data.get("by_operator_bucket") or {}),
        )


@dataclass(frozen=True)
class ScenarioComparison:
    scenario_id: str
    passed: bool
    drifts: List[Drift] = field(default_factory=list)
    checks_executed: List[str] = field(default_factory=list)
    explainability_groups: Optional[List[ExplainabilityGroup]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "scenario_id": self.scenario_id,
                "passed": self.passed,
                "drifts": [d.to_dict() for d in self.drifts],
                "checks_executed": list(self.checks_executed),
                "explainability_groups": (
                    [g.to_dict() for g in self.explainability_groups]
                    if self.explainability_groups is not None
                    else None
                ),
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScenarioComparison":
        groups = data.get("explainability_groups")
        return cls(
            scenario_id=data["scenario_id"],
            passed=bool(data["passed"]),
            drifts=[Drift.from_dict(d) for d in data.get("drifts", [])],
            checks_executed=list(data.get("checks_executed", [])),
            explainability_groups=(
                [ExplainabilityGroup.from_dict(g) for g in groups] if isinstance(groups, list) else None
            ),
        )


@dataclass(frozen=True)
class ComparisonSummary:
    total_scenarios: int
    passed_scenarios: int
    failed_scenarios: int
    high_severity_drifts: int
    medium_severity_drifts: int
    low_severity_drifts: int
    explainability_rollup: Optional[ExplainabilityRollup] = None

    @property
    def total_drifts(self) -> int:
        return self.high_severity_drifts + self.medium_severity_drifts + self.low_severity_drifts

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "total_scenarios": self.total_scenarios,
                "passed_scenarios": self.passed_scenarios,
                "failed_scenarios": self.failed_scenarios,
                "high_severity_drifts": self.high_severity_drifts,
                "medium_severity_drifts": self.medium_severity_drifts,
                "low_severity_drifts": self.low_severity_drifts,
                "explainability_rollup": (
                    self.explainability_rollup.to_dict() if self.explainability_rollup else None
                ),
            }
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ComparisonSummary":
        rollup = data.get("explainability_rollup")
        return cls(
            total_scenarios=int(data["total_scenarios"]),
            passed_scenarios=int(data["passed_scenarios"]),
            failed_scenarios=int(data["failed_scenarios"]),
            high_severity_drifts=int(data["high_severity_drifts"]),
            medium_severity_drifts=int(data["medium_severity_drifts"]),
            low_severity_drifts=int(data["low_severity_drifts"]),
            explainability_rollup=(
                ExplainabilityRollup.from_dict(rollup) if isinstance(rollup, Mapping) else None
            ),
        )


@dataclass(frozen=True)
class ComparisonResult:
    """Outcome of comparing a baseline and candidate over a scenario suite."""

    generated_at: str
    profile_name: str
    passed: bool
    scenarios: List[ScenarioComparison]
    summary: ComparisonSummary

    def all_drifts(self) -> List[Drift]:
        return [drift for scenario in self.scenarios for drift in scenario.drifts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "profile_name": self.profile_name,
            "passed": self.passed,
            "scenarios": [s.to_dict() for s in self.scenarios],
            "summary": self.summary.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ComparisonResult":
        return cls(
            generated_at=data.get("generated_at", ""),
            profile_name=data.get("profile_name", ""),
            passed=bool(data["passed"]),
            scenarios=[ScenarioComparison.from_dict(s) for s in data.get("scenarios", [])],
            summary=ComparisonSummary.from_dict(data["summary"]),
        )


# =============================================================================
# Gate evaluation
# =============================================================================


@dataclass(frozen=True)
class GateAnnotation:
    level: AnnotationLevel
    scenario_id: str
    check_id: str
    severity: Severity
    message: str
    evidence_refs: Optional[List[str]] = None
    evidence_fingerprint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "level": self.level.value,
                "scenario_id": self.scenario_id,
                "check_id": self.check_id,
                "severity": self.severity.value,
                "message": self.message,
                "evidence_refs": self.evidence_refs,
                "evidence_fingerprint": self.evidence_fingerprint,
            }
        )


@dataclass(frozen=True)
class GateEvaluation:
    """Verdict of one gate evaluation; produced once, never mutated."""

    mode: GateMode
    passed: bool
    status: GateStatus
    reason: str
    classification: GateClassification
    triage_labels: List[str]
    retried: bool
    annotations: List[GateAnnotation]
    summary: ComparisonSummary
    generated_at: str
    explainability_rollup: Optional[ExplainabilityRollup] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "mode": self.mode.value,
                "passed": self.passed,
                "status": self.status.value,
                "reason": self.reason,
                "classification": self.classification.value,
                "triage_labels": list(self.triage_labels),
                "retried": self.retried,
                "annotations": [a.to_dict() for a in self.annotations],
                "summary": self.summary.to_dict(),
                "explainability_rollup": (
                    self.explainability_rollup.to_dict() if self.explainability_rollup else None
                ),
                "generated_at": self.generated_at,
            }
        )
