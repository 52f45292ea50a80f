"""
Artifact resolver: locate a baseline or candidate artifact file.

Precedence:
1. explicit file, if it exists                       -> "explicit"
2. golden store v1/{baseline_id}/baseline.norm.json  -> "golden_v1" (baseline only)
3. explicit legacy run directory                     -> "legacy_run"
4. newest subdirectory of the legacy runs root       -> "legacy_run"

Inside a run directory {kind}.norm.json is preferred over {kind}.json.
Nothing resolving is not an error: the caller gets None and reports it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.canon import drop_none
from ..core.types import ProfileName
from .golden import resolve_golden_baseline_location

logger = logging.getLogger(__name__)

SOURCE_EXPLICIT = "explicit"
SOURCE_GOLDEN = "golden_v1"
SOURCE_LEGACY = "legacy_run"


@dataclass(frozen=True)
class ResolvedArtifact:
    file: str
    source: str
    legacy_run_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none({"file": self.file, "source": self.source, "legacy_run_dir": self.legacy_run_dir})


def _artifact_in_run_dir(run_dir: str, kind: str) -> Optional[str]:
    for name in (f"{kind}.norm.json", f"{kind}.json"):
        candidate = os.path.join(run_dir, name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _newest_legacy_artifact(runs_root: str, kind: str) -> Optional[ResolvedArtifact]:
    if not os.path.isdir(runs_root):
        return None
    with os.scandir(runs_root) as it:
        run_dirs = [entry for entry in it if entry.is_dir()]
    # Newest first; name breaks mtime ties
    run_dirs.sort(key=lambda entry: (-entry.stat().st_mtime, entry.name))
    for entry in run_dirs:
        found = _artifact_in_run_dir(entry.path, kind)
        if found is not None:
            return ResolvedArtifact(file=found, source=SOURCE_LEGACY, legacy_run_dir=entry.path)
    return None


def resolve_replay_artifact(
    kind: str,
    goldens_root: str,
    baseline_id: Optional[str],
    legacy_runs_root: str,
    explicit_file: Optional[str] = None,
    legacy_run_dir: Optional[str] = None,
) -> Optional[ResolvedArtifact]:
    """Resolve one artifact file by precedence, or None."""
    kind = ProfileName(kind).value

    if explicit_file:
        explicit = os.path.abspath(explicit_file)
        if os.path.isfile(explicit):
            logger.debug("Resolved %s artifact from explicit file %s", kind, explicit)
            return ResolvedArtifact(file=explicit, source=SOURCE_EXPLICIT)

    if kind == ProfileName.BASELINE.value:
        location = resolve_golden_baseline_location(goldens_root, baseline_id)
        if os.path.isfile(location.baseline_artifact_file):
            logger.debug("Resolved baseline artifact from golden store %s", location.baseline_dir)
            return ResolvedArtifact(file=location.baseline_artifact_file, source=SOURCE_GOLDEN)

    runs_root = os.path.abspath(legacy_runs_root)
    if legacy_run_dir:
        run_dir = legacy_run_dir if os.path.isabs(legacy_run_dir) else os.path.join(runs_root, legacy_run_dir)
        found = _artifact_in_run_dir(run_dir, kind)
        if found is not None:
            logger.debug("Resolved %s artifact from legacy run %s", kind, run_dir)
            return ResolvedArtifact(file=found, source=SOURCE_LEGACY, legacy_run_dir=run_dir)

    resolved = _newest_legacy_artifact(runs_root, kind)
    if resolved is not None:
        logger.debug("Resolved %s artifact from newest legacy run %s", kind, resolved.legacy_run_dir)
    return resolved
