"""
Tests for matrix run contracts, cell scoring and the matrix runner.

Contracts are built in memory; end-to-end runs use the bundled scenario
suite with the synthetic runner and a fixed clock.
"""

from __future__ import annotations

import copy
import dataclasses
import functools
import json
import os
import tempfile
import unittest
from typing import Any, Dict, List

from driftline.cli import ASSETS_DIR, DEFAULT_SCENARIOS
from driftline.core.capture import synthetic_scenario_runner
from driftline.core.comparator import compare_replay_runs
from driftline.core.errors import ContractValidationError
from driftline.core.gate import evaluate_replay_gate, evaluate_replay_gate_with_retry
from driftline.core.profile import ComparatorProfile
from driftline.core.report import render_matrix_report_markdown
from driftline.core.scenario import NormalizationConfig, load_scenario_suite, parse_scenario
from driftline.core.types import (
    AuthorizationResult,
    ComparisonResult,
    GateClassification,
    ProfileArtifacts,
    ScenarioRunArtifact,
    TerminalSurface,
    TraceEvent,
)
from driftline.matrix.contract import (
    expand_matrix_cells,
    load_matrix_run_contract,
    parse_matrix_run_contract,
    scenario_matches_slice,
)
from driftline.matrix.runner import normalize_scenario_for_cell, run_replay_matrix
from driftline.matrix.scoring import (
    MatrixCellResult,
    aggregate_axis,
    build_matrix_report,
    evaluate_matrix_promotable,
    passes_risk_tier_policy,
    round3,
    score_matrix_cell,
)
from driftline.version import MATRIX_CONTRACT_SCHEMA_VERSION

FIXED_EPOCH_S = 1700000000.0
MATRIX_CONTRACT = os.path.join(ASSETS_DIR, "matrix-contract.v1.json")

FULL_NORMALIZATION = {
    "mask_ids": True,
    "canonicalize_timestamps": True,
    "canonicalize_paths": True,
    "strip_nondeterministic_text": True,
}


# =============================================================================
# Fixtures
# =============================================================================


def make_contract_dict() -> Dict[str, Any]:
    return {
        "schema_version": MATRIX_CONTRACT_SCHEMA_VERSION,
        "matrix_id": "test-matrix",
        "axes": {
            "model_variants": [{"model_id": "model-a"}, {"model_id": "model-b"}],
            "comparator_profiles": [{"profile_id": "default", "profile_path": "default.profile.json"}],
            "scenario_tag_slices": [
                {"slice_id": "build", "tags": ["build"], "risk_tier": "p0"},
                {"slice_id": "plan", "tags": ["Plan", "handoff"], "match": "all", "risk_tier": "p1"},
            ],
            "execution_surfaces": ["auto", "memory_terminal", "memory_terminal_interactive"],
            "gate_modes": ["strict"],
            "normalization_profiles": [{"normalization_id": "full", "config": dict(FULL_NORMALIZATION)}],
        },
        "controls": {
            "determinism": {
                "fixed_tz": "UTC",
                "fixed_locale": "C.UTF-8",
                "normalization_required": True,
                "retry_once_classification": True,
                "fingerprint_stability_check": True,
            },
            "risk_tiers": {"p0": {"max_high_severity_drifts": 0}},
        },
    }


def make_scenario(scenario_id: str = "CELL", tags: List[str] = None, normalization: Dict[str, Any] = None):
    raw: Dict[str, Any] = {
        "scenario_id": scenario_id,
        "title": "Matrix fixture",
        "intent": "Exercise a matrix cell.",
        "workspace": {"workspace_path": "/repo", "workspace_id": "repo"},
        "runtime": {"mode": "headless", "terminal_surface": "auto"},
        "steps": [{"kind": "user", "prompt": "go"}],
        "expectations": {
            "success_signature": {"must_include": ["done"]},
            "checks": [{"id": "tool-order", "type": "tool_order", "severity": "high"}],
        },
        "tags": tags or ["build"],
    }
    if normalization is not None:
        raw["normalization"] = normalization
    return parse_scenario(raw)


def _artifacts(profile: str, actions: List[str], scenario_id: str = "CELL") -> ProfileArtifacts:
    events = [
        TraceEvent(
            event_type="tool_call",
            timestamp_ms=0,
            scenario_id=scenario_id,
            tool_name="memory_plan",
            action_raw=a,
            action_canonical=a,
            authorization=AuthorizationResult("allowed", "allowlist_match"),
        )
        for a in actions
    ]
    return ProfileArtifacts(profile, [ScenarioRunArtifact(scenario_id, profile, events, events, True)])


def one_high_drift_comparison() -> ComparisonResult:
    return compare_replay_runs(
        [make_scenario()],
        _artifacts("baseline", ["confirm", "update"]),
        _artifacts("candidate", ["update", "confirm"]),
    )


def clean_comparison() -> ComparisonResult:
    return compare_replay_runs(
        [make_scenario()],
        _artifacts("baseline", ["confirm"]),
        _artifacts("candidate", ["confirm"]),
    )


def make_cell_result(cell, comparison, gate) -> MatrixCellResult:
    return MatrixCellResult(
        cell_id=cell.cell_id,
        scenario_ids=["CELL"],
        axes=cell.axes,
        comparison=comparison,
        gate=gate,
        score=score_matrix_cell(comparison, gate),
        promotable=True,
    )


# =============================================================================
# Contract
# =============================================================================


class TestMatrixContract(unittest.TestCase):
    def test_expands_to_twelve_cells(self):
        cells = expand_matrix_cells(parse_matrix_run_contract(make_contract_dict()))
        self.assertEqual(len(cells), 12)
        self.assertEqual(len({c.cell_id for c in cells}), 12)
        self.assertEqual(cells[0].cell_id, "model-a__default__build__auto__strict__full")
        self.assertEqual(cells[-1].cell_id, "model-b__default__plan__memory_terminal_interactive__strict__full")

    def test_slice_tags_lower_cased(self):
        contract = parse_matrix_run_contract(make_contract_dict())
        self.assertEqual(contract.scenario_tag_slices[1].tags, ["plan", "handoff"])
        self.assertEqual(contract.scenario_tag_slices[0].match, "any")

    def test_unsupported_schema_version(self):
        raw = make_contract_dict()
        raw["schema_version"] = "replay-matrix-run-contract.v0"
        with self.assertRaises(ContractValidationError):
            parse_matrix_run_contract(raw)

    def test_empty_axis_rejected(self):
        raw = make_contract_dict()
        raw["axes"]["gate_modes"] = []
        with self.assertRaises(ContractValidationError) as ctx:
            parse_matrix_run_contract(raw)
        self.assertEqual(str(ctx.exception), "axes.gate_modes must be a non-empty array.")

    def test_invalid_values_rejected(self):
        for axis, value in (
            ("execution_surfaces", ["vscode"]),
            ("gate_modes", ["lenient"]),
        ):
            raw = make_contract_dict()
            raw["axes"][axis] = value
            with self.assertRaises(ContractValidationError):
                parse_matrix_run_contract(raw)

        raw = make_contract_dict()
        raw["axes"]["scenario_tag_slices"][0]["risk_tier"] = "p9"
        with self.assertRaises(ContractValidationError):
            parse_matrix_run_contract(raw)

    def test_determinism_defaults(self):
        raw = make_contract_dict()
        raw["controls"] = {"determinism": {}}
        contract = parse_matrix_run_contract(raw)
        self.assertEqual(contract.determinism.fixed_tz, "UTC")
        self.assertTrue(contract.determinism.normalization_required)
        self.assertIsNone(contract.risk_tiers)
        self.assertEqual(contract.determinism.to_determinism_config().locale, "C.UTF-8")

    def test_slice_match_modes(self):
        contract = parse_matrix_run_contract(make_contract_dict())
        build_slice, plan_slice = contract.scenario_tag_slices
        plan_only = make_scenario(tags=["plan"])
        both = make_scenario(tags=["plan", "handoff"])
        self.assertFalse(scenario_matches_slice(plan_only, plan_slice))
        self.assertTrue(scenario_matches_slice(both, plan_slice))
        self.assertTrue(scenario_matches_slice(make_scenario(tags=["build"]), build_slice))

    def test_bundled_contract_loads(self):
        contract = load_matrix_run_contract(MATRIX_CONTRACT)
        self.assertEqual(contract.matrix_id, "default-replay-matrix")
        self.assertEqual(len(expand_matrix_cells(contract)), 4)

    def test_contract_round_trips(self):
        contract = parse_matrix_run_contract(make_contract_dict())
        self.assertEqual(parse_matrix_run_contract(copy.deepcopy(contract.to_dict())), contract)


# =============================================================================
# Scoring
# =============================================================================


class TestMatrixScoring(unittest.TestCase):
    def setUp(self):
        self.contract = parse_matrix_run_contract(make_contract_dict())
        self.cells = expand_matrix_cells(self.contract)
        self.p0_cell = self.cells[0]
        self.p1_cell = next(c for c in self.cells if c.axes.scenario_slice.risk_tier == "p1")

    def test_single_high_drift_cell(self):
        comparison = one_high_drift_comparison()
        gate = evaluate_replay_gate(comparison, "strict")
        score = score_matrix_cell(comparison, gate)
        self.assertEqual(score.wds, 80)
        self.assertEqual(score.spr, 0)
        self.assertEqual(score.eci, 1)
        self.assertEqual(score.bbr, 1)
        self.assertEqual(score.cms, 0)
        self.assertEqual(score.flake_penalty, 0)
        self.assertTrue(score.deterministic_regression)

        cell = make_cell_result(self.p0_cell, comparison, gate)
        self.assertFalse(passes_risk_tier_policy(cell, self.contract))
        self.assertFalse(evaluate_matrix_promotable(cell, self.contract))

    def test_clean_cell_is_promotable(self):
        comparison = clean_comparison()
        gate = evaluate_replay_gate(comparison, "strict")
        score = score_matrix_cell(comparison, gate)
        self.assertEqual((score.wds, score.spr, score.eci, score.bbr, score.cms), (100, 1, 1, 0, 100))
        cell = make_cell_result(self.p0_cell, comparison, gate)
        self.assertTrue(evaluate_matrix_promotable(cell, self.contract))

    def test_absent_policy_passes(self):
        comparison = one_high_drift_comparison()
        gate = evaluate_replay_gate(comparison, "warn")
        cell = make_cell_result(self.p1_cell, comparison, gate)
        self.assertTrue(passes_risk_tier_policy(cell, self.contract))
        self.assertFalse(evaluate_matrix_promotable(cell, self.contract))

    def test_flake_penalty(self):
        gate = evaluate_replay_gate_with_retry(one_high_drift_comparison(), clean_comparison(), "strict")
        self.assertEqual(gate.classification, GateClassification.INTERMITTENT_FLAKE)
        score = score_matrix_cell(one_high_drift_comparison(), gate)
        self.assertEqual(score.flake_penalty, 5)
        self.assertEqual(score.cms, -5)
        self.assertFalse(score.deterministic_regression)

    def test_round3_half_up(self):
        self.assertEqual(round3(2 / 3), 0.667)
        self.assertEqual(round3(0.5), 0.5)
        self.assertEqual(round3(80), 80)

    def test_report_rollups(self):
        clean = clean_comparison()
        drifting = one_high_drift_comparison()
        clean_gate = evaluate_replay_gate(clean, "strict")
        drift_gate = evaluate_replay_gate(drifting, "strict")
        results = [
            make_cell_result(self.p0_cell, clean, clean_gate),
            make_cell_result(self.p1_cell, drifting, drift_gate),
        ]
        results[1] = dataclasses.replace(results[1], promotable=False)

        report = build_matrix_report("test-matrix", "label", results, clock=lambda: 0.0)
        self.assertEqual(report.total_cells, 2)
        self.assertEqual(report.promotable_cells, 1)
        self.assertEqual(report.deterministic_regressions, 1)
        self.assertEqual([t.risk_tier for t in report.risk_tier_summary], ["p0", "p1", "p2"])
        self.assertEqual(report.risk_tier_summary[2].cell_count, 0)

        slices = aggregate_axis(results, "scenario_slice")
        self.assertEqual([item.axis_value for item in slices], ["build", "plan"])
        self.assertEqual(slices[0].average_cms, 100)
        models = aggregate_axis(results, "model_variant")
        self.assertEqual(len(models), 1)
        self.assertEqual(models[0].average_wds, 90)
        self.assertEqual(models[0].average_spr, 0.5)

        markdown = render_matrix_report_markdown(report)
        self.assertIn("# Replay Matrix Report", markdown)
        self.assertIn("- p0: cells=1, promotable=1, deterministic_regressions=0", markdown)
        self.assertIn("- Score: WDS=80, SPR=0, ECI=1, BBR=1, CMS=0", markdown)


# =============================================================================
# Runner
# =============================================================================


class TestNormalizeScenarioForCell(unittest.TestCase):
    def setUp(self):
        self.cells = expand_matrix_cells(parse_matrix_run_contract(make_contract_dict()))

    def test_required_normalization_forces_flags(self):
        scenario = make_scenario(
            normalization={
                "mask_ids": False,
                "canonicalize_timestamps": False,
                "canonicalize_paths": False,
                "strip_nondeterministic_text": False,
            }
        )
        cell = self.cells[1]
        pinned = normalize_scenario_for_cell(scenario, cell, require_normalization=True)
        self.assertEqual(pinned.normalization, NormalizationConfig(True, True, True, True))
        self.assertEqual(pinned.runtime.terminal_surface, TerminalSurface.MEMORY_TERMINAL)
        self.assertEqual(pinned.metadata["matrix"]["model_variant"], "model-a")
        self.assertEqual(scenario.runtime.terminal_surface, TerminalSurface.AUTO)

    def test_optional_normalization_merges_flags(self):
        raw = make_contract_dict()
        raw["axes"]["normalization_profiles"] = [
            {"normalization_id": "paths", "config": {"canonicalize_paths": True}}
        ]
        cell = expand_matrix_cells(parse_matrix_run_contract(raw))[0]
        scenario = make_scenario(normalization={"mask_ids": True, "canonicalize_timestamps": True})
        pinned = normalize_scenario_for_cell(scenario, cell, require_normalization=False)
        self.assertEqual(pinned.normalization, NormalizationConfig(False, True, True, False))


class TestRunReplayMatrix(unittest.TestCase):
    def setUp(self):
        self.scenarios = load_scenario_suite(DEFAULT_SCENARIOS).scenarios
        self.contract = load_matrix_run_contract(MATRIX_CONTRACT)
        self.runner = functools.partial(synthetic_scenario_runner, clock=lambda: FIXED_EPOCH_S)

    def test_bundled_matrix_is_fully_promotable(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = run_replay_matrix(
                os.path.join(tmp, "runs"),
                "matrix",
                self.contract,
                self.scenarios,
                {"default": ComparatorProfile()},
                workspace_path=tmp,
                runner=self.runner,
                clock=lambda: FIXED_EPOCH_S,
            )
            report = output.report
            self.assertEqual(report.total_cells, 4)
            self.assertEqual(report.promotable_cells, 4)
            self.assertEqual(report.deterministic_regressions, 0)
            self.assertEqual(
                [c.scenario_ids for c in report.cells[:2]],
                [["BUILD_SCRIPT_HEADLESS"], ["BUILD_SCRIPT_HEADLESS"]],
            )
            self.assertEqual(
                report.cells[2].scenario_ids, ["PLAN_CONFIRM_UPDATE", "HANDOFF_TO_COORDINATOR"]
            )
            self.assertTrue(output.output_file.endswith("matrix-report.json"))
            with open(os.path.join(tmp, output.output_file), encoding="utf-8") as f:
                data = json.load(f)
            self.assertEqual(data["matrix_id"], "default-replay-matrix")
            self.assertEqual(len(data["axis_rollups"]), 1 + 1 + 2 + 2 + 1 + 1)
            self.assertTrue(os.path.isfile(os.path.join(tmp, output.markdown_file)))

    def test_cells_without_scenarios_are_skipped(self):
        build_only = [s for s in self.scenarios if "build" in s.tags]
        with tempfile.TemporaryDirectory() as tmp:
            output = run_replay_matrix(
                tmp,
                "matrix",
                self.contract,
                build_only,
                {"default": ComparatorProfile()},
                runner=self.runner,
                clock=lambda: FIXED_EPOCH_S,
            )
        self.assertEqual(output.report.total_cells, 2)

    def test_missing_profile_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ContractValidationError):
                run_replay_matrix(tmp, "matrix", self.contract, self.scenarios, {}, runner=self.runner)


if __name__ == "__main__":
    unittest.main()
