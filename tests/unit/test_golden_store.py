"""Tests for the golden baseline store, guarded promotion and artifact resolution."""

from __future__ import annotations

import json
import os
import tempfile
import unittest
from typing import List

from driftline.core.canon import write_json_file
from driftline.core.errors import ArtifactProfileError
from driftline.core.types import ProfileArtifacts, ScenarioRunArtifact, TraceEvent
from driftline.storage.golden import (
    GoldenBaselineMetadata,
    read_golden_baseline,
    resolve_golden_baseline_location,
    sanitize_baseline_id,
    write_golden_baseline,
)
from driftline.storage.promotion import (
    PromotionApplied,
    RefusedDryRun,
    RefusedExisting,
    RefusedUnapproved,
    promote_baseline,
    summarize_promotion_diff,
)
from driftline.storage.resolver import (
    SOURCE_EXPLICIT,
    SOURCE_GOLDEN,
    SOURCE_LEGACY,
    resolve_replay_artifact,
)

PROMOTED_AT = "2024-01-15T10:00:00.000Z"


def _scenario(scenario_id: str, actions: List[str], profile: str = "baseline") -> ScenarioRunArtifact:
    events = [
        TraceEvent(
            event_type="tool_call",
            timestamp_ms=0,
            scenario_id=scenario_id,
            tool_name="memory_plan",
            action_raw=a,
            action_canonical=a,
        )
        for a in actions
    ]
    return ScenarioRunArtifact(scenario_id, profile, events, events, True)


def make_artifacts(profile: str = "baseline", **scenarios: List[str]) -> ProfileArtifacts:
    return ProfileArtifacts(profile, [_scenario(sid, actions, profile) for sid, actions in scenarios.items()])


def write_artifacts(path: str, artifacts: ProfileArtifacts) -> str:
    write_json_file(path, artifacts.to_dict())
    return path


# =============================================================================
# Golden store
# =============================================================================


class TestGoldenStore(unittest.TestCase):
    def test_sanitize_baseline_id(self):
        self.assertEqual(sanitize_baseline_id(" Release/2024 Q1 "), "release-2024-q1")
        self.assertEqual(sanitize_baseline_id("nightly_v1.2"), "nightly_v1.2")
        self.assertEqual(sanitize_baseline_id(None), "default")
        self.assertEqual(sanitize_baseline_id("///"), "default")

    def test_location_layout(self):
        with tempfile.TemporaryDirectory() as tmp:
            location = resolve_golden_baseline_location(tmp, "Main")
            self.assertEqual(location.baseline_id, "main")
            self.assertEqual(location.baseline_dir, os.path.join(os.path.abspath(tmp), "v1", "main"))
            self.assertEqual(os.path.basename(location.baseline_artifact_file), "baseline.norm.json")
            self.assertEqual(os.path.basename(location.metadata_file), "metadata.json")

    def test_read_missing_baseline_returns_none(self):
        with tempfile.TemporaryDirectory() as tmp:
            location = resolve_golden_baseline_location(tmp, "main")
            self.assertIsNone(read_golden_baseline(location))

            # Artifact without metadata still counts as missing
            write_artifacts(location.baseline_artifact_file, make_artifacts(A=["confirm"]))
            self.assertIsNone(read_golden_baseline(location))

    def test_write_then_read(self):
        artifacts = make_artifacts(B=["confirm"], A=["update"])
        with tempfile.TemporaryDirectory() as tmp:
            source = write_artifacts(os.path.join(tmp, "runs", "r1", "baseline.norm.json"), artifacts)
            location = resolve_golden_baseline_location(tmp, "main")
            metadata = write_golden_baseline(location, artifacts, source, promoted_at=PROMOTED_AT)

            self.assertEqual(metadata.source_candidate_file, "runs/r1/baseline.norm.json")
            self.assertEqual(metadata.artifact.scenario_count, 2)
            self.assertEqual(metadata.artifact.scenario_ids, ["B", "A"])

            record = read_golden_baseline(location)
            self.assertIsNotNone(record)
            self.assertEqual(record.metadata, metadata)
            self.assertEqual(record.artifact.to_dict(), artifacts.to_dict())

            with open(location.metadata_file, encoding="utf-8") as f:
                stored = json.load(f)
            self.assertEqual(stored["schema_version"], "replay-golden-baseline-metadata.v1")
            self.assertEqual(GoldenBaselineMetadata.from_dict(stored), metadata)

    def test_candidate_profile_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            location = resolve_golden_baseline_location(tmp, "main")
            with self.assertRaises(ArtifactProfileError) as ctx:
                write_golden_baseline(location, make_artifacts("candidate", A=["confirm"]), "candidate.norm.json")
            self.assertEqual(ctx.exception.actual, "candidate")
            self.assertFalse(os.path.exists(location.baseline_dir))


# =============================================================================
# Promotion
# =============================================================================


class TestPromotion(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.goldens = os.path.join(self.tmp, "goldens")
        self.candidate = write_artifacts(
            os.path.join(self.tmp, "baseline.norm.json"), make_artifacts(A=["confirm"], B=["update"])
        )

    def tearDown(self):
        self._tmp.cleanup()

    def test_dry_run_by_default(self):
        outcome = promote_baseline(self.candidate, self.goldens, "main")
        self.assertIsInstance(outcome, RefusedDryRun)
        self.assertFalse(outcome.applied)
        self.assertIn("--apply --approve", outcome.guard_reason)
        self.assertFalse(outcome.summary.has_existing_baseline)
        self.assertEqual(outcome.summary.added_scenarios, ["A", "B"])
        self.assertFalse(os.path.exists(self.goldens))

    def test_apply_requires_approval(self):
        outcome = promote_baseline(self.candidate, self.goldens, "main", apply=True)
        self.assertIsInstance(outcome, RefusedUnapproved)
        self.assertFalse(os.path.exists(outcome.location.baseline_artifact_file))
        self.assertFalse(os.path.exists(outcome.location.metadata_file))

    def test_apply_and_approve_writes_store(self):
        outcome = promote_baseline(self.candidate, self.goldens, "main", apply=True, approve=True)
        self.assertIsInstance(outcome, PromotionApplied)
        self.assertTrue(outcome.applied)
        self.assertIsNone(outcome.guard_reason)
        self.assertTrue(os.path.isfile(outcome.baseline_artifact_file))
        self.assertTrue(os.path.isfile(outcome.metadata_file))
        self.assertTrue(outcome.to_dict()["applied"])

    def test_existing_baseline_requires_force(self):
        promote_baseline(self.candidate, self.goldens, "main", apply=True, approve=True)
        refreshed = write_artifacts(
            os.path.join(self.tmp, "next", "baseline.norm.json"), make_artifacts(A=["confirm"], C=["close"])
        )

        outcome = promote_baseline(refreshed, self.goldens, "main", apply=True, approve=True)
        self.assertIsInstance(outcome, RefusedExisting)
        self.assertEqual(outcome.guard_reason, "Baseline 'main' already exists. Re-run with --force to overwrite.")
        record = read_golden_baseline(outcome.location)
        self.assertEqual(record.artifact.scenario_ids(), ["A", "B"])

        forced = promote_baseline(refreshed, self.goldens, "main", apply=True, approve=True, force=True)
        self.assertIsInstance(forced, PromotionApplied)
        self.assertEqual(forced.summary.added_scenarios, ["C"])
        self.assertEqual(forced.summary.removed_scenarios, ["B"])
        self.assertEqual(forced.summary.unchanged_scenarios, ["A"])
        self.assertEqual(read_golden_baseline(forced.location).artifact.scenario_ids(), ["A", "C"])

    def test_candidate_artifact_rejected(self):
        path = write_artifacts(os.path.join(self.tmp, "candidate.norm.json"), make_artifacts("candidate", A=["x"]))
        with self.assertRaises(ArtifactProfileError):
            promote_baseline(path, self.goldens, "main", apply=True, approve=True)

    def test_diff_summary_tracks_event_count_delta(self):
        existing = make_artifacts(A=["confirm"], B=["update"], D=["close"], E=["open", "close"])
        candidate = make_artifacts(A=["confirm"], B=["update", "delete"], C=["open"], E=["open"])
        summary = summarize_promotion_diff("main", candidate, existing)
        self.assertTrue(summary.has_existing_baseline)
        self.assertEqual(summary.total_candidate_scenarios, 4)
        self.assertEqual(summary.added_scenarios, ["C"])
        self.assertEqual(summary.removed_scenarios, ["D"])
        self.assertEqual(summary.changed_scenarios, ["B", "E"])
        self.assertEqual(summary.unchanged_scenarios, ["A"])
        self.assertEqual(summary.event_count_deltas, {"B": 1, "E": -1})
        self.assertEqual(summary.to_dict()["event_count_deltas"], {"B": 1, "E": -1})


# =============================================================================
# Resolver
# =============================================================================


class TestResolver(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = self._tmp.name
        self.goldens = os.path.join(self.tmp, "goldens")
        self.runs = os.path.join(self.tmp, "runs")

    def tearDown(self):
        self._tmp.cleanup()

    def _legacy_run(self, name: str, mtime: float, file_name: str = "baseline.norm.json") -> str:
        run_dir = os.path.join(self.runs, name)
        path = write_artifacts(os.path.join(run_dir, file_name), make_artifacts(A=["confirm"]))
        os.utime(run_dir, (mtime, mtime))
        return path

    def test_nothing_resolves_to_none(self):
        self.assertIsNone(resolve_replay_artifact("baseline", self.goldens, "main", self.runs))

    def test_explicit_file_wins(self):
        explicit = write_artifacts(os.path.join(self.tmp, "mine.json"), make_artifacts(A=["confirm"]))
        promote_baseline(explicit, self.goldens, "main", apply=True, approve=True)
        resolved = resolve_replay_artifact("baseline", self.goldens, "main", self.runs, explicit_file=explicit)
        self.assertEqual(resolved.source, SOURCE_EXPLICIT)
        self.assertEqual(resolved.file, os.path.abspath(explicit))

    def test_golden_store_before_legacy_runs(self):
        legacy = self._legacy_run("run-1", 1000.0)
        promote_baseline(legacy, self.goldens, "main", apply=True, approve=True)
        resolved = resolve_replay_artifact(
            "baseline", self.goldens, "main", self.runs, explicit_file=os.path.join(self.tmp, "missing.json")
        )
        self.assertEqual(resolved.source, SOURCE_GOLDEN)
        self.assertTrue(resolved.file.endswith(os.path.join("v1", "main", "baseline.norm.json")))

    def test_candidate_skips_golden_store(self):
        self._legacy_run("run-1", 1000.0, "candidate.norm.json")
        resolved = resolve_replay_artifact("candidate", self.goldens, "main", self.runs)
        self.assertEqual(resolved.source, SOURCE_LEGACY)
        self.assertTrue(resolved.file.endswith("candidate.norm.json"))

    def test_newest_legacy_run(self):
        self._legacy_run("run-old", 1000.0)
        self._legacy_run("run-new", 2000.0)
        resolved = resolve_replay_artifact("baseline", self.goldens, "main", self.runs)
        self.assertEqual(resolved.source, SOURCE_LEGACY)
        self.assertEqual(os.path.basename(resolved.legacy_run_dir), "run-new")

    def test_explicit_legacy_run_dir(self):
        self._legacy_run("run-old", 1000.0)
        self._legacy_run("run-new", 2000.0)
        resolved = resolve_replay_artifact(
            "baseline", self.goldens, "main", self.runs, legacy_run_dir="run-old"
        )
        self.assertEqual(os.path.basename(resolved.legacy_run_dir), "run-old")

    def test_norm_json_preferred(self):
        self._legacy_run("run-1", 1000.0, "baseline.json")
        path = self._legacy_run("run-1", 1000.0, "baseline.norm.json")
        resolved = resolve_replay_artifact("baseline", self.goldens, "main", self.runs)
        self.assertEqual(resolved.file, os.path.join(os.path.abspath(self.runs), "run-1", "baseline.norm.json"))
        self.assertTrue(os.path.samefile(resolved.file, path))


if __name__ == "__main__":
    unittest.main()
