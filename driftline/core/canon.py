"""Deterministic serialization for Driftline artifacts.

Every file Driftline writes goes through stable_json(), so two runs over
identical logical content produce byte-identical files.

Guarantees:
- stable_json(v) is deterministic: dict key order is irrelevant (sorted
  recursively), indentation is fixed at two spaces
- Enums serialize as their values, records as their to_dict()
- canon(v) is the compact form used for hashing
- Floats use repr-level precision; -0.0 collapses to 0.0
"""
from __future__ import annotations

import hashlib
import json
import math
import os
from enum import Enum
from typing import Any, Dict, Mapping, Optional


def stable_json(value: Any) -> str:
    """Encode a value as key-sorted, two-space indented JSON."""
    return json.dumps(
        _normalize_value(value),
        sort_keys=True,
        ensure_ascii=False,
        indent=2,
    )


def canon(value: Any) -> bytes:
    """Compact canonical bytes for hashing."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(
        _normalize_value(value),
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Compute SHA-256 hex digest of bytes."""
    return hashlib.sha256(data).hexdigest()


def drop_none(mapping: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of mapping without keys whose value is None."""
    return {k: v for k, v in mapping.items() if v is not None}


def write_json_file(path: str, value: Any) -> None:
    """Write stable JSON plus a trailing newline, creating parent dirs."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(stable_json(value))
        f.write("\n")


def to_manifest_path(value: str) -> str:
    return value.replace("\\", "/")


def to_workspace_relative_path(file_path: str, workspace_path: Optional[str] = None) -> str:
    """Relativize file_path against the workspace (or cwd).

    Paths that escape the base are returned absolute, forward-slashed.
    """
    base = os.path.abspath(workspace_path) if workspace_path else os.getcwd()
    absolute = os.path.abspath(file_path)
    try:
        relative = os.path.relpath(absolute, base)
    except ValueError:
        # Different drives on Windows
        return to_manifest_path(absolute)
    if relative in ("", "."):
        return "."
    if relative.startswith(".."):
        return to_manifest_path(absolute)
    return to_manifest_path(relative)


def _normalize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Enum):
        return _normalize_value(value.value)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        normalized = float(f"{value:.17g}")
        if normalized == 0.0:
            normalized = 0.0
        return normalized
    if isinstance(value, str):
        return value
    if hasattr(value, "to_dict"):
        return _normalize_value(value.to_dict())
    if isinstance(value, Mapping):
        return {str(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return str(value)
