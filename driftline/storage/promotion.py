"""
Guarded baseline promotion.

A candidate baseline artifact is written into the golden store only when
every guard is satisfied, checked in order:

1. the artifact's profile is "baseline" (otherwise ArtifactProfileError)
2. --apply was given (otherwise a dry run)
3. --approve was given
4. no baseline exists yet under the id, or --force was given

Refusals are returned as outcomes, never raised. Every outcome carries the
diff summary against the currently stored baseline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

from ..core.canon import canon
from ..core.determinism import Clock
from ..core.types import ProfileArtifacts, ScenarioRunArtifact
from .golden import (
    GoldenBaselineLocation,
    read_golden_baseline,
    read_profile_artifacts,
    require_baseline_profile,
    resolve_golden_baseline_location,
    write_golden_baseline,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromotionDiffSummary:
    baseline_id: str
    has_existing_baseline: bool
    total_candidate_scenarios: int
    added_scenarios: List[str] = field(default_factory=list)
    removed_scenarios: List[str] = field(default_factory=list)
    changed_scenarios: List[str] = field(default_factory=list)
    unchanged_scenarios: List[str] = field(default_factory=list)
    # scenario id -> candidate event count minus stored event count
    event_count_deltas: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline_id": self.baseline_id,
            "has_existing_baseline": self.has_existing_baseline,
            "total_candidate_scenarios": self.total_candidate_scenarios,
            "added_scenarios": list(self.added_scenarios),
            "removed_scenarios": list(self.removed_scenarios),
            "changed_scenarios": list(self.changed_scenarios),
            "unchanged_scenarios": list(self.unchanged_scenarios),
            "event_count_deltas": dict(self.event_count_deltas),
        }


@dataclass(frozen=True)
class PromotionOutcome:
    location: GoldenBaselineLocation
    summary: PromotionDiffSummary

    applied: ClassVar[bool] = False

    @property
    def guard_reason(self) -> Optional[str]:
        return None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "applied": self.applied,
            "location": self.location.to_dict(),
            "summary": self.summary.to_dict(),
        }
        if self.guard_reason is not None:
            result["guard_reason"] = self.guard_reason
        return result


@dataclass(frozen=True)
class PromotionApplied(PromotionOutcome):
    baseline_artifact_file: str = ""
    metadata_file: str = ""

    applied: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["baseline_artifact_file"] = self.baseline_artifact_file
        result["metadata_file"] = self.metadata_file
        return result


@dataclass(frozen=True)
class RefusedDryRun(PromotionOutcome):
    @property
    def guard_reason(self) -> Optional[str]:
        return "Dry-run mode. Re-run with --apply --approve to write baseline artifacts."


@dataclass(frozen=True)
class RefusedUnapproved(PromotionOutcome):
    @property
    def guard_reason(self) -> Optional[str]:
        return "Promotion requires explicit approval. Re-run with --approve."


@dataclass(frozen=True)
class RefusedExisting(PromotionOutcome):
    @property
    def guard_reason(self) -> Optional[str]:
        return f"Baseline '{self.location.baseline_id}' already exists. Re-run with --force to overwrite."


def _event_rows(artifact: ScenarioRunArtifact) -> List[Dict[str, Any]]:
    return [e.to_dict() for e in artifact.normalized_events]


def scenario_signature(artifact: ScenarioRunArtifact) -> bytes:
    return canon(_event_rows(artifact))


def summarize_promotion_diff(
    baseline_id: str, candidate: ProfileArtifacts, existing: Optional[ProfileArtifacts]
) -> PromotionDiffSummary:
    """Classify candidate scenarios against the stored baseline, if any."""
    candidate_ids = candidate.scenario_ids()
    if existing is None:
        return PromotionDiffSummary(
            baseline_id=baseline_id,
            has_existing_baseline=False,
            total_candidate_scenarios=len(candidate_ids),
            added_scenarios=sorted(candidate_ids),
        )

    existing_ids = set(existing.scenario_ids())
    added, changed, unchanged = [], [], []
    deltas: Dict[str, int] = {}
    for artifact in candidate.scenarios:
        stored = existing.get(artifact.scenario_id)
        if stored is None:
            added.append(artifact.scenario_id)
        elif scenario_signature(stored) == scenario_signature(artifact):
            unchanged.append(artifact.scenario_id)
        else:
            changed.append(artifact.scenario_id)
            deltas[artifact.scenario_id] = len(artifact.normalized_events) - len(stored.normalized_events)

    return PromotionDiffSummary(
        baseline_id=baseline_id,
        has_existing_baseline=True,
        total_candidate_scenarios=len(candidate_ids),
        added_scenarios=sorted(added),
        removed_scenarios=sorted(existing_ids - set(candidate_ids)),
        changed_scenarios=sorted(changed),
        unchanged_scenarios=sorted(unchanged),
        event_count_deltas=deltas,
    )


def promote_baseline(
    candidate_file: str,
    goldens_root: str,
    baseline_id: Optional[str],
    apply: bool = False,
    approve: bool = False,
    force: bool = False,
    clock: Optional[Clock] = None,
) -> PromotionOutcome:
    """Promote a baseline artifact file into the golden store.

    Raises:
        ArtifactProfileError: If the candidate file is not a baseline artifact.
    """
    candidate = read_profile_artifacts(candidate_file)
    require_baseline_profile(candidate, candidate_file)

    location = resolve_golden_baseline_location(goldens_root, baseline_id)
    existing = read_golden_baseline(location)
    summary = summarize_promotion_diff(
        location.baseline_id, candidate, existing.artifact if existing is not None else None
    )

    outcome: PromotionOutcome
    if not apply:
        outcome = RefusedDryRun(location=location, summary=summary)
    elif not approve:
        outcome = RefusedUnapproved(location=location, summary=summary)
    elif existing is not None and not force:
        outcome = RefusedExisting(location=location, summary=summary)
    else:
        write_golden_baseline(location, candidate, candidate_file, clock=clock)
        logger.info("Promoted baseline %s to %s", location.baseline_id, location.baseline_dir)
        return PromotionApplied(
            location=location,
            summary=summary,
            baseline_artifact_file=location.baseline_artifact_file,
            metadata_file=location.metadata_file,
        )

    logger.info("Promotion of %s not applied: %s", location.baseline_id, outcome.guard_reason)
    return outcome
