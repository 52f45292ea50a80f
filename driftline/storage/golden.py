"""
Golden baseline store.

Layout:
    {goldens_root}/v1/{baseline_id}/baseline.norm.json   ProfileArtifacts (profile "baseline")
    {goldens_root}/v1/{baseline_id}/metadata.json        GoldenBaselineMetadata

Baselines are written only through guarded promotion; everything else
reads them.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..core.canon import to_workspace_relative_path, write_json_file
from ..core.determinism import Clock, utc_now_iso
from ..core.documents import load_document
from ..core.errors import ArtifactProfileError
from ..core.types import ProfileArtifacts, ProfileName
from ..version import GOLDEN_METADATA_SCHEMA_VERSION, GOLDEN_STORE_VERSION

BASELINE_ARTIFACT_NAME = "baseline.norm.json"
METADATA_NAME = "metadata.json"
DEFAULT_BASELINE_ID = "default"

_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9._-]+")


@dataclass(frozen=True)
class GoldenBaselineLocation:
    store_root: str
    baseline_id: str
    baseline_dir: str
    baseline_artifact_file: str
    metadata_file: str
    store_version: str = GOLDEN_STORE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store_root": self.store_root,
            "store_version": self.store_version,
            "baseline_id": self.baseline_id,
            "baseline_dir": self.baseline_dir,
            "baseline_artifact_file": self.baseline_artifact_file,
            "metadata_file": self.metadata_file,
        }


@dataclass(frozen=True)
class GoldenArtifactSummary:
    normalized_artifact_file: str
    scenario_count: int
    scenario_ids: List[str] = field(default_factory=list)
    profile: str = ProfileName.BASELINE.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile,
            "normalized_artifact_file": self.normalized_artifact_file,
            "scenario_count": self.scenario_count,
            "scenario_ids": list(self.scenario_ids),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GoldenArtifactSummary":
        return cls(
            profile=data.get("profile", ProfileName.BASELINE.value),
            normalized_artifact_file=data.get("normalized_artifact_file", BASELINE_ARTIFACT_NAME),
            scenario_count=int(data.get("scenario_count", 0)),
            scenario_ids=list(data.get("scenario_ids", [])),
        )


@dataclass(frozen=True)
class GoldenBaselineMetadata:
    baseline_id: str
    promoted_at: str
    source_candidate_file: str
    artifact: GoldenArtifactSummary
    store_version: str = GOLDEN_STORE_VERSION
    schema_version: str = GOLDEN_METADATA_SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "store_version": self.store_version,
            "baseline_id": self.baseline_id,
            "promoted_at": self.promoted_at,
            "source_candidate_file": self.source_candidate_file,
            "artifact": self.artifact.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GoldenBaselineMetadata":
        return cls(
            schema_version=data.get("schema_version", GOLDEN_METADATA_SCHEMA_VERSION),
            store_version=data.get("store_version", GOLDEN_STORE_VERSION),
            baseline_id=data["baseline_id"],
            promoted_at=data.get("promoted_at", ""),
            source_candidate_file=data.get("source_candidate_file", ""),
            artifact=GoldenArtifactSummary.from_dict(data.get("artifact") or {}),
        )


@dataclass(frozen=True)
class GoldenBaselineRecord:
    location: GoldenBaselineLocation
    metadata: GoldenBaselineMetadata
    artifact: ProfileArtifacts


def sanitize_baseline_id(value: Optional[str]) -> str:
    """Lower-case, collapse unsafe characters to "-", default to "default"."""
    token = _UNSAFE_ID_CHARS.sub("-", (value or "").strip().lower()).strip("-")
    return token or DEFAULT_BASELINE_ID


def resolve_golden_baseline_location(goldens_root: str, baseline_id: Optional[str]) -> GoldenBaselineLocation:
    store_root = os.path.abspath(goldens_root)
    safe_id = sanitize_baseline_id(baseline_id)
    baseline_dir = os.path.join(store_root, GOLDEN_STORE_VERSION, safe_id)
    return GoldenBaselineLocation(
        store_root=store_root,
        baseline_id=safe_id,
        baseline_dir=baseline_dir,
        baseline_artifact_file=os.path.join(baseline_dir, BASELINE_ARTIFACT_NAME),
        metadata_file=os.path.join(baseline_dir, METADATA_NAME),
    )


def require_baseline_profile(artifact: ProfileArtifacts, source: str) -> None:
    if artifact.profile != ProfileName.BASELINE.value:
        raise ArtifactProfileError(
            f"Artifact '{source}' has profile '{artifact.profile}'; expected 'baseline'.",
            expected=ProfileName.BASELINE.value,
            actual=artifact.profile,
        )


def read_profile_artifacts(path: str) -> ProfileArtifacts:
    return ProfileArtifacts.from_dict(load_document(path))


def read_golden_baseline(location: GoldenBaselineLocation) -> Optional[GoldenBaselineRecord]:
    """Load a stored baseline, or None when either file is missing.

    Raises:
        ArtifactProfileError: If the stored artifact is not a baseline.
        OSError: For any I/O failure other than a missing file.
    """
    try:
        artifact = read_profile_artifacts(location.baseline_artifact_file)
        metadata = GoldenBaselineMetadata.from_dict(load_document(location.metadata_file))
    except FileNotFoundError:
        return None

    require_baseline_profile(artifact, location.baseline_artifact_file)
    return GoldenBaselineRecord(location=location, metadata=metadata, artifact=artifact)


def write_golden_baseline(
    location: GoldenBaselineLocation,
    artifact: ProfileArtifacts,
    source_candidate_file: str,
    promoted_at: Optional[str] = None,
    clock: Optional[Clock] = None,
) -> GoldenBaselineMetadata:
    """Write the artifact and its metadata; the caller owns the guards."""
    require_baseline_profile(artifact, source_candidate_file)
    metadata = GoldenBaselineMetadata(
        baseline_id=location.baseline_id,
        promoted_at=promoted_at or utc_now_iso(clock),
        source_candidate_file=to_workspace_relative_path(source_candidate_file, location.store_root),
        artifact=GoldenArtifactSummary(
            normalized_artifact_file=BASELINE_ARTIFACT_NAME,
            scenario_count=len(artifact.scenarios),
            scenario_ids=artifact.scenario_ids(),
        ),
    )
    write_json_file(location.baseline_artifact_file, artifact.to_dict())
    write_json_file(location.metadata_file, metadata.to_dict())
    return metadata
