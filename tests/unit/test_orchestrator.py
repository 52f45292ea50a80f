"""Tests for trace capture and replay orchestration.

A fixed clock stands in for wall time so run ids and artifacts are stable.
"""

from __future__ import annotations

import functools
import json
import os
import tempfile
import unittest
from typing import Any, Dict, List

from driftline.core.capture import (
    RunnerContext,
    capture_scenario_artifact,
    resolve_selected_surface,
    synthetic_scenario_runner,
)
from driftline.core.determinism import DeterminismConfig
from driftline.core.errors import OrchestratorConfigError
from driftline.core.orchestrator import ReplayOrchestrator
from driftline.core.scenario import Scenario, parse_scenario
from driftline.core.types import EventType, TerminalSurface, TraceEvent

FIXED_EPOCH_S = 1700000000.0
FIXED_EPOCH_MS = 1700000000000


def fixed_clock() -> float:
    return FIXED_EPOCH_S


def make_scenario(scenario_id: str = "BUILD", mode: str = "headless", surface: str = "auto", steps=None) -> Scenario:
    return parse_scenario(
        {
            "scenario_id": scenario_id,
            "title": "Capture",
            "intent": "Exercise capture.",
            "workspace": {"workspace_path": "/repo", "workspace_id": "repo"},
            "runtime": {"mode": mode, "terminal_surface": surface},
            "steps": steps
            or [
                {"kind": "user", "id": "ask", "prompt": "Build it."},
                {"kind": "tool", "id": "build", "tool": "memory_plan", "action": "run_build_script"},
                {"kind": "wait", "id": "settle", "wait_ms": 50},
            ],
            "expectations": {"success_signature": {"must_include": ["build_launched"]}},
        }
    )


def _context(profile: str = "baseline") -> RunnerContext:
    return RunnerContext(profile=profile, run_id="test-run")


class TestSyntheticRunner(unittest.TestCase):
    def test_build_script_expansion(self):
        events = synthetic_scenario_runner(make_scenario(), _context(), clock=fixed_clock)
        self.assertEqual(
            [e.event_type for e in events],
            [
                EventType.USER_PROMPT.value,
                EventType.TOOL_CALL.value,
                EventType.BUILD_SCRIPT_RESOLVED.value,
                EventType.TOOL_CALL.value,
                EventType.WAIT.value,
                EventType.OUTCOME.value,
            ],
        )
        launch = events[3]
        self.assertEqual(launch.tool_name, "memory_terminal")
        self.assertEqual(launch.action_raw, "run")
        self.assertEqual(events[1].payload["selected_terminal_surface"], "memory_terminal")
        self.assertEqual(events[-1].success_signature, "build_launched")
        self.assertEqual(events[0].timestamp_ms, FIXED_EPOCH_MS + 25)

    def test_output_depends_only_on_scenario_and_profile(self):
        scenario = make_scenario()
        first = synthetic_scenario_runner(scenario, _context(), clock=fixed_clock)
        second = synthetic_scenario_runner(scenario, _context(), clock=fixed_clock)
        self.assertEqual(first, second)

    def test_handoff_step_emits_handoff_event(self):
        scenario = make_scenario(
            "HANDOFF",
            steps=[
                {
                    "kind": "tool",
                    "id": "handoff",
                    "tool": "memory_agent",
                    "action": "handoff",
                    "args": {"to_agent": "Coordinator"},
                }
            ],
        )
        events = synthetic_scenario_runner(scenario, _context(), clock=fixed_clock)
        handoff = [e for e in events if e.event_type == EventType.HANDOFF]
        self.assertEqual(len(handoff), 1)
        self.assertEqual(handoff[0].payload, {"to_agent": "Coordinator"})

    def test_blocked_expectation_recorded(self):
        scenario = make_scenario(
            steps=[{"kind": "tool", "id": "rm", "tool": "memory_terminal", "action": "run", "expect_auth": "blocked"}]
        )
        events = synthetic_scenario_runner(scenario, _context(), clock=fixed_clock)
        self.assertEqual(events[0].authorization.outcome, "blocked")
        self.assertEqual(events[0].authorization.reason_class, "policy_block")


class TestSurfaceSelection(unittest.TestCase):
    def test_explicit_surface_wins(self):
        selection = resolve_selected_surface(make_scenario(surface="memory_terminal_interactive"), "memory_plan")
        self.assertEqual(selection.selected_surface, TerminalSurface.MEMORY_TERMINAL_INTERACTIVE)
        self.assertEqual(selection.selection_reason, "explicit_runtime_surface")

    def test_interactive_mode_maps_to_interactive_surface(self):
        selection = resolve_selected_surface(make_scenario(mode="interactive"), "memory_plan")
        self.assertEqual(selection.selected_surface, TerminalSurface.MEMORY_TERMINAL_INTERACTIVE)

    def test_headless_default(self):
        selection = resolve_selected_surface(make_scenario(), "memory_plan")
        self.assertEqual(selection.selected_surface, TerminalSurface.MEMORY_TERMINAL)
        self.assertEqual(selection.selection_reason, "auto_runtime_mode_headless_default")

    def test_vscode_tool_maps_to_interactive(self):
        selection = resolve_selected_surface(make_scenario(), "memory_terminal_vscode")
        self.assertEqual(selection.selected_surface, TerminalSurface.MEMORY_TERMINAL_INTERACTIVE)


class TestCaptureArtifact(unittest.TestCase):
    def test_synthetic_capture_is_successful_and_normalized(self):
        runner = functools.partial(synthetic_scenario_runner, clock=fixed_clock)
        artifact = capture_scenario_artifact(make_scenario(), _context(), runner)
        self.assertTrue(artifact.success)
        self.assertEqual(artifact.normalized_events[0].timestamp_ms, 0)
        self.assertEqual(artifact.raw_events[0].timestamp_ms, FIXED_EPOCH_MS + 25)
        self.assertEqual(artifact.normalized_events[3].action_canonical, "execute")

    def test_dict_rows_are_coerced(self):
        def runner(scenario: Scenario, context: RunnerContext) -> List[Dict[str, Any]]:
            return [
                {
                    "event_type": "tool_call",
                    "timestamp_ms": 5,
                    "scenario_id": scenario.scenario_id,
                    "tool_name": " memory_terminal ",
                    "action_raw": "Send",
                }
            ]

        artifact = capture_scenario_artifact(make_scenario(), _context("candidate"), runner)
        self.assertIsInstance(artifact.raw_events[0], TraceEvent)
        self.assertEqual(artifact.normalized_events[0].tool_name, "memory_terminal")
        self.assertEqual(artifact.normalized_events[0].action_canonical, "execute")
        self.assertFalse(artifact.success)
        self.assertEqual(artifact.profile, "candidate")

    def test_runner_errors_propagate(self):
        def runner(scenario: Scenario, context: RunnerContext) -> List[TraceEvent]:
            raise RuntimeError("agent host unavailable")

        with self.assertRaises(RuntimeError):
            capture_scenario_artifact(make_scenario(), _context(), runner)


class TestReplayOrchestrator(unittest.TestCase):
    def test_run_writes_artifacts_and_manifest(self):
        with tempfile.TemporaryDirectory() as tmp:
            orchestrator = ReplayOrchestrator(os.path.join(tmp, "runs"), clock=fixed_clock)
            result = orchestrator.run([make_scenario()], "smoke", workspace_path=tmp)

            run_id = f"smoke-{FIXED_EPOCH_MS}"
            manifest = result.manifest
            self.assertEqual(manifest["run_id"], run_id)
            self.assertEqual(manifest["scenario_count"], 1)
            self.assertEqual(manifest["baseline_artifact_file"], f"runs/{run_id}/baseline.norm.json")
            self.assertEqual(manifest["candidate_raw_artifact_file"], f"runs/{run_id}/candidate.raw.jsonl")
            self.assertEqual(manifest["determinism_env"]["tz"], "UTC")
            self.assertEqual(manifest["created_at"], "2023-11-14T22:13:20.000Z")

            for name in (
                "baseline.raw.jsonl",
                "candidate.raw.jsonl",
                "baseline.norm.json",
                "candidate.norm.json",
                "manifest.json",
            ):
                self.assertTrue(os.path.isfile(os.path.join(result.output_dir, name)), name)

            with open(os.path.join(result.output_dir, "baseline.raw.jsonl"), encoding="utf-8") as f:
                rows = [json.loads(line) for line in f if line.strip()]
            self.assertEqual(len(rows), len(result.baseline.scenarios[0].raw_events))
            self.assertEqual(set(rows[0]), {"run_id", "profile", "scenario_id", "event"})
            self.assertEqual(rows[0]["profile"], "baseline")

            with open(os.path.join(result.output_dir, "candidate.norm.json"), encoding="utf-8") as f:
                self.assertEqual(json.load(f)["profile"], "candidate")

    def test_determinism_config_recorded_without_touching_environ(self):
        before = dict(os.environ)
        with tempfile.TemporaryDirectory() as tmp:
            orchestrator = ReplayOrchestrator(
                tmp, determinism=DeterminismConfig(tz="Europe/Berlin", locale="de_DE.UTF-8"), clock=fixed_clock
            )
            result = orchestrator.run([make_scenario()], "env")
        self.assertEqual(result.manifest["determinism_env"]["tz"], "Europe/Berlin")
        self.assertEqual(result.manifest["determinism_env"]["locale"], "de_DE.UTF-8")
        self.assertEqual(dict(os.environ), before)

    def test_determinism_config_from_env(self):
        config = DeterminismConfig.from_env({"TZ": "Asia/Tokyo", "LANG": "en_US.UTF-8"})
        self.assertEqual(config, DeterminismConfig(tz="Asia/Tokyo", locale="en_US.UTF-8"))
        self.assertEqual(
            config.as_env(), {"TZ": "Asia/Tokyo", "LANG": "en_US.UTF-8", "LC_ALL": "en_US.UTF-8"}
        )
        self.assertEqual(DeterminismConfig.from_env({}), DeterminismConfig(tz="UTC", locale="C.UTF-8"))

    def test_capture_single_profile(self):
        with tempfile.TemporaryDirectory() as tmp:
            orchestrator = ReplayOrchestrator(tmp, clock=fixed_clock)
            result = orchestrator.capture("candidate", [make_scenario()], "cap")
            self.assertTrue(result.output_file.endswith("candidate.norm.json"))
            self.assertTrue(os.path.isfile(result.raw_output_file))
            self.assertEqual(result.profile.profile, "candidate")

    def test_capture_rejects_unknown_profile(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValueError):
                ReplayOrchestrator(tmp).capture("shadow", [make_scenario()], "cap")

    def test_adapter_mode_requires_runner(self):
        with self.assertRaises(OrchestratorConfigError):
            ReplayOrchestrator("runs", runner_mode="adapter")
        with self.assertRaises(OrchestratorConfigError):
            ReplayOrchestrator("runs", runner_mode="live")

    def test_adapter_runner_used_in_adapter_mode(self):
        seen: List[str] = []

        def adapter(scenario: Scenario, context: RunnerContext) -> List[TraceEvent]:
            seen.append(f"{context.profile}:{scenario.scenario_id}")
            return []

        with tempfile.TemporaryDirectory() as tmp:
            orchestrator = ReplayOrchestrator(tmp, runner_mode="adapter", adapter_runner=adapter, clock=fixed_clock)
            orchestrator.run([make_scenario()], "adapter")
        self.assertEqual(seen, ["baseline:BUILD", "candidate:BUILD"])


if __name__ == "__main__":
    unittest.main()
