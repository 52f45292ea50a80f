"""Golden baseline storage, promotion and artifact resolution."""

from .golden import (
    GoldenBaselineLocation,
    GoldenBaselineMetadata,
    GoldenBaselineRecord,
    read_golden_baseline,
    resolve_golden_baseline_location,
    sanitize_baseline_id,
    write_golden_baseline,
)
from .promotion import (
    PromotionApplied,
    PromotionDiffSummary,
    PromotionOutcome,
    RefusedDryRun,
    RefusedExisting,
    RefusedUnapproved,
    promote_baseline,
)
from .resolver import ResolvedArtifact, resolve_replay_artifact

__all__ = [
    "GoldenBaselineLocation",
    "GoldenBaselineMetadata",
    "GoldenBaselineRecord",
    "sanitize_baseline_id",
    "resolve_golden_baseline_location",
    "read_golden_baseline",
    "write_golden_baseline",
    "PromotionOutcome",
    "PromotionApplied",
    "RefusedDryRun",
    "RefusedUnapproved",
    "RefusedExisting",
    "PromotionDiffSummary",
    "promote_baseline",
    "ResolvedArtifact",
    "resolve_replay_artifact",
]
