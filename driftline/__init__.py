from .core import (
    # Core types
    CheckType,
    ComparisonResult,
    Drift,
    DriftCategory,
    GateEvaluation,
    GateMode,
    ProfileArtifacts,
    Severity,
    TraceEvent,
    # Canonicalization
    canon,
    sha256_hex,
    stable_json,
    # Scenarios
    Scenario,
    ScenarioSuite,
    load_scenario_suite,
    parse_scenario_suite,
    select_scenarios,
    # Capture and orchestration
    DeterminismConfig,
    ReplayOrchestrator,
    RunnerContext,
    synthetic_scenario_runner,
    # Comparison and gate
    ComparatorProfile,
    compare_replay_runs,
    evaluate_replay_gate,
    evaluate_replay_gate_with_retry,
    load_comparator_profile,
    # Reports
    write_replay_report,
    # Errors
    DriftlineError,
)
from .matrix import load_matrix_run_contract, run_replay_matrix
from .storage import promote_baseline, resolve_replay_artifact
from .version import (
    DRIFTLINE_VERSION,
    GOLDEN_STORE_VERSION,
    MATRIX_CONTRACT_SCHEMA_VERSION,
    SCENARIO_SCHEMA_VERSION,
)

__all__ = [
    # Version
    "DRIFTLINE_VERSION",
    "SCENARIO_SCHEMA_VERSION",
    "MATRIX_CONTRACT_SCHEMA_VERSION",
    "GOLDEN_STORE_VERSION",
    # Core types
    "CheckType",
    "ComparisonResult",
    "Drift",
    "DriftCategory",
    "GateEvaluation",
    "GateMode",
    "ProfileArtifacts",
    "Severity",
    "TraceEvent",
    # Canonicalization
    "canon",
    "sha256_hex",
    "stable_json",
    # Scenarios
    "Scenario",
    "ScenarioSuite",
    "load_scenario_suite",
    "parse_scenario_suite",
    "select_scenarios",
    # Capture and orchestration
    "DeterminismConfig",
    "RunnerContext",
    "synthetic_scenario_runner",
    "ReplayOrchestrator",
    # Comparison and gate
    "ComparatorProfile",
    "load_comparator_profile",
    "compare_replay_runs",
    "evaluate_replay_gate",
    "evaluate_replay_gate_with_retry",
    # Reports
    "write_replay_report",
    # Matrix
    "load_matrix_run_contract",
    "run_replay_matrix",
    # Golden store
    "promote_baseline",
    "resolve_replay_artifact",
    # Errors
    "DriftlineError",
]
