"""
Replay orchestration: run a scenario suite under baseline and candidate
profiles and persist the artifacts.

Layout of one run directory ({output_root}/{label}-{epoch_ms}/):
    baseline.raw.jsonl      raw envelopes, one stable-JSON row per line
    candidate.raw.jsonl
    baseline.norm.json      ProfileArtifacts
    candidate.norm.json
    manifest.json           paths (workspace-relative) + determinism_env
"""

from __future__ import annotations

import functools
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .canon import canon, to_workspace_relative_path, write_json_file
from .capture import (
    RunnerContext,
    ScenarioRunner,
    capture_scenario_artifact,
    create_raw_trace_event_envelopes,
    synthetic_scenario_runner,
)
from .determinism import Clock, DeterminismConfig, iso_timestamp, now_ms
from .errors import OrchestratorConfigError
from .scenario import Scenario
from .types import ProfileArtifacts, ProfileName, ScenarioRunArtifact

logger = logging.getLogger(__name__)

RUNNER_MODES = ("synthetic", "adapter")


@dataclass(frozen=True)
class ReplayRunResult:
    manifest: Dict[str, Any]
    baseline: ProfileArtifacts
    candidate: ProfileArtifacts
    output_dir: str


@dataclass(frozen=True)
class ReplayCaptureResult:
    profile: ProfileArtifacts
    output_file: str
    raw_output_file: str


def write_json_lines(path: str, rows: Sequence[Any]) -> None:
    """Write rows as stable JSON lines; an empty row list yields an empty file."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    lines = [canon(row).decode("utf-8") for row in rows]
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n" if lines else "")


class ReplayOrchestrator:
    """Capture baseline/candidate artifacts for a suite of scenarios."""

    def __init__(
        self,
        output_root: str,
        runner: Optional[ScenarioRunner] = None,
        runner_mode: str = "synthetic",
        adapter_runner: Optional[ScenarioRunner] = None,
        determinism: Optional[DeterminismConfig] = None,
        clock: Optional[Clock] = None,
    ):
        if runner_mode not in RUNNER_MODES:
            raise OrchestratorConfigError(f"Unsupported runner_mode '{runner_mode}'.")
        if runner_mode == "adapter" and adapter_runner is None:
            raise OrchestratorConfigError("ReplayOrchestrator runner_mode=adapter requires adapter_runner.")

        self.output_root = os.path.abspath(output_root)
        self.runner_mode = runner_mode
        self.determinism = determinism or DeterminismConfig()
        self.clock = clock
        self._synthetic_runner = runner or functools.partial(synthetic_scenario_runner, clock=clock)
        self._adapter_runner = adapter_runner

    @property
    def active_runner(self) -> ScenarioRunner:
        if self.runner_mode == "adapter" and self._adapter_runner is not None:
            return self._adapter_runner
        return self._synthetic_runner

    def run(
        self,
        scenarios: Sequence[Scenario],
        label: str,
        workspace_path: Optional[str] = None,
    ) -> ReplayRunResult:
        """Capture both profiles, write artifacts and the manifest."""
        started_ms = now_ms(self.clock)
        run_id = f"{label}-{started_ms}"
        output_dir = os.path.join(self.output_root, run_id)
        os.makedirs(output_dir, exist_ok=True)
        logger.info("Starting replay run %s in %s", run_id, output_dir)

        baseline = self._execute_profile(ProfileName.BASELINE.value, scenarios, run_id, workspace_path)
        candidate = self._execute_profile(ProfileName.CANDIDATE.value, scenarios, run_id, workspace_path)

        files = {
            "baseline_raw": os.path.join(output_dir, "baseline.raw.jsonl"),
            "candidate_raw": os.path.join(output_dir, "candidate.raw.jsonl"),
            "baseline": os.path.join(output_dir, "baseline.norm.json"),
            "candidate": os.path.join(output_dir, "candidate.norm.json"),
        }
        write_json_lines(files["baseline_raw"], create_raw_trace_event_envelopes(run_id, baseline))
        write_json_lines(files["candidate_raw"], create_raw_trace_event_envelopes(run_id, candidate))
        write_json_file(files["baseline"], baseline.to_dict())
        write_json_file(files["candidate"], candidate.to_dict())

        rel = {k: to_workspace_relative_path(v, workspace_path) for k, v in files.items()}
        manifest = {
            "run_id": run_id,
            "created_at": iso_timestamp(now_ms(self.clock)),
            "scenario_count": len(scenarios),
            "output_dir": to_workspace_relative_path(output_dir, workspace_path),
            "baseline_artifact_file": rel["baseline"],
            "candidate_artifact_file": rel["candidate"],
            "baseline_raw_artifact_file": rel["baseline_raw"],
            "candidate_raw_artifact_file": rel["candidate_raw"],
            "baseline_normalized_artifact_file": rel["baseline"],
            "candidate_normalized_artifact_file": rel["candidate"],
            "artifact_envelope": {
                "baseline": {
                    "raw_file": rel["baseline_raw"],
                    "normalized_file": rel["baseline"],
                    "scenario_count": len(baseline.scenarios),
                },
                "candidate": {
                    "raw_file": rel["candidate_raw"],
                    "normalized_file": rel["candidate"],
                    "scenario_count": len(candidate.scenarios),
                },
            },
            "determinism_env": self.determinism.snapshot(),
        }
        write_json_file(os.path.join(output_dir, "manifest.json"), manifest)
        logger.info("Replay run %s captured %d scenarios", run_id, len(scenarios))

        return ReplayRunResult(manifest=manifest, baseline=baseline, candidate=candidate, output_dir=output_dir)

    def capture(
        self,
        profile: str,
        scenarios: Sequence[Scenario],
        label: str,
        workspace_path: Optional[str] = None,
    ) -> ReplayCaptureResult:
        """Capture a single profile into its own run directory."""
        profile_name = ProfileName(profile).value
        run_id = f"{label}-{profile_name}-{now_ms(self.clock)}"
        output_dir = os.path.join(self.output_root, run_id)
        os.makedirs(output_dir, exist_ok=True)
        logger.info("Capturing %s profile as %s", profile_name, run_id)

        artifacts = self._execute_profile(profile_name, scenarios, run_id, workspace_path)
        raw_output_file = os.path.join(output_dir, f"{profile_name}.raw.jsonl")
        output_file = os.path.join(output_dir, f"{profile_name}.norm.json")
        write_json_lines(raw_output_file, create_raw_trace_event_envelopes(run_id, artifacts))
        write_json_file(output_file, artifacts.to_dict())

        return ReplayCaptureResult(profile=artifacts, output_file=output_file, raw_output_file=raw_output_file)

    def _execute_profile(
        self,
        profile: str,
        scenarios: Sequence[Scenario],
        run_id: str,
        workspace_path: Optional[str],
    ) -> ProfileArtifacts:
        context = RunnerContext(profile=profile, run_id=run_id, determinism=self.determinism)
        runner = self.active_runner
        artifacts: List[ScenarioRunArtifact] = []
        for scenario in scenarios:
            logger.debug("Running scenario %s (%s)", scenario.scenario_id, profile)
            artifacts.append(capture_scenario_artifact(scenario, context, runner, workspace_path))
        return ProfileArtifacts(profile=profile, scenarios=artifacts)
