"""Core types and logic for Driftline."""

from .canon import canon, sha256_hex, stable_json, to_workspace_relative_path
from .capture import (
    RunnerContext,
    ScenarioRunner,
    capture_scenario_artifact,
    create_raw_trace_event_envelopes,
    synthetic_scenario_runner,
)
from .comparator import compare_replay_runs, compare_scenario
from .determinism import DeterminismConfig
from .documents import load_document
from .errors import (
    ArtifactProfileError,
    ArtifactResolutionError,
    ContractValidationError,
    DocumentLoadError,
    DriftlineError,
    FingerprintStabilityError,
    OrchestratorConfigError,
    ProfileValidationError,
    ScenarioSchemaError,
    SelectionError,
)
from .gate import (
    evaluate_replay_gate,
    evaluate_replay_gate_with_retry,
    render_gate_summary_markdown,
    to_github_annotations,
)
from .normalize import canonicalize_action, normalize_trace_events
from .orchestrator import ReplayCaptureResult, ReplayOrchestrator, ReplayRunResult
from .profile import ComparatorProfile, load_comparator_profile
from .report import render_replay_report_markdown, write_replay_report
from .scenario import (
    Scenario,
    ScenarioSuite,
    load_scenario_suite,
    parse_scenario,
    parse_scenario_suite,
    select_scenarios,
)
from .types import (
    CheckType,
    ComparisonResult,
    Drift,
    DriftCategory,
    GateEvaluation,
    GateMode,
    ProfileArtifacts,
    Severity,
    TraceEvent,
)

__all__ = [
    # Canonicalization
    "canon",
    "sha256_hex",
    "stable_json",
    "to_workspace_relative_path",
    "load_document",
    # Types
    "CheckType",
    "ComparisonResult",
    "Drift",
    "DriftCategory",
    "GateEvaluation",
    "GateMode",
    "ProfileArtifacts",
    "Severity",
    "TraceEvent",
    # Scenarios
    "Scenario",
    "ScenarioSuite",
    "parse_scenario",
    "parse_scenario_suite",
    "load_scenario_suite",
    "select_scenarios",
    # Normalization
    "canonicalize_action",
    "normalize_trace_events",
    # Capture and orchestration
    "DeterminismConfig",
    "RunnerContext",
    "ScenarioRunner",
    "synthetic_scenario_runner",
    "capture_scenario_artifact",
    "create_raw_trace_event_envelopes",
    "ReplayOrchestrator",
    "ReplayRunResult",
    "ReplayCaptureResult",
    # Comparison and gate
    "ComparatorProfile",
    "load_comparator_profile",
    "compare_scenario",
    "compare_replay_runs",
    "evaluate_replay_gate",
    "evaluate_replay_gate_with_retry",
    "render_gate_summary_markdown",
    "to_github_annotations",
    # Reports
    "render_replay_report_markdown",
    "write_replay_report",
    # Errors
    "DriftlineError",
    "ScenarioSchemaError",
    "ContractValidationError",
    "ProfileValidationError",
    "DocumentLoadError",
    "ArtifactProfileError",
    "ArtifactResolutionError",
    "OrchestratorConfigError",
    "FingerprintStabilityError",
    "SelectionError",
]
