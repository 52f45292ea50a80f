"""
Trace normalization: strip run-to-run noise before comparison.

normalize_trace_events() is pure and total. Every flag defaults to on.
Per event:
- timestamps become offsets from the first event (never negative)
- action_raw is lower-cased and mapped through ACTION_ALIASES into
  action_canonical
- payload strings are rewritten recursively: volatile ids masked, absolute
  paths made workspace-relative, timestamps and long digit runs stripped
"""

from __future__ import annotations

import dataclasses
import os
import re
from typing import Any, Dict, List, Optional, Sequence

from .scenario import Scenario
from .types import TraceEvent

ID_MASK = "<ID>"
NONDET_MASK = "<NONDET>"

VOLATILE_ID_PATTERNS = (
    re.compile(r"\b(sess|run|req)_[A-Za-z0-9_-]+\b", re.ASCII),
    re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}\b", re.ASCII | re.IGNORECASE),
    re.compile(r"\b[0-9A-HJKMNP-TV-Z]{26}\b", re.ASCII),
)

NONDETERMINISTIC_TEXT_PATTERNS = (
    re.compile(r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z\b", re.ASCII),
    re.compile(r"\b\d{10,}\b", re.ASCII),
)

WINDOWS_ABSOLUTE_PATH = re.compile(r"[A-Za-z]:\\[^\s\"']+")
POSIX_ABSOLUTE_PATH = re.compile(r"(^|[\s\"'(=])(/[\w.\-/]+)")

ACTION_ALIASES = {
    "run": "execute",
    "send": "execute",
    "create": "execute",
    "kill": "terminate",
    "close": "terminate",
}


def canonicalize_action(action_raw: Optional[str]) -> Optional[str]:
    if not action_raw:
        return None
    normalized = action_raw.strip().lower()
    return ACTION_ALIASES.get(normalized, normalized)


def _forward_slash(value: str) -> str:
    return value.replace("\\", "/")


def _workspace_candidates(workspace_path: str) -> List[str]:
    candidates: List[str] = []
    for candidate in (workspace_path, os.path.abspath(workspace_path)):
        trimmed = _forward_slash(candidate).rstrip("/")
        if trimmed and trimmed not in candidates:
            candidates.append(trimmed)
    return candidates


def canonicalize_absolute_path(value: str, workspace_path: Optional[str] = None) -> str:
    """Forward-slash a path and make it relative to the workspace if inside it."""
    normalized = _forward_slash(value)
    if not workspace_path:
        return normalized

    lowered = normalized.lower()
    for candidate in _workspace_candidates(workspace_path):
        prefix = candidate.lower()
        if lowered == prefix:
            return "."
        if lowered.startswith(prefix + "/"):
            return normalized[len(candidate) + 1:] or "."
    return normalized


def canonicalize_path_tokens(text: str, workspace_path: Optional[str] = None) -> str:
    text = WINDOWS_ABSOLUTE_PATH.sub(lambda m: canonicalize_absolute_path(m.group(0), workspace_path), text)
    return POSIX_ABSOLUTE_PATH.sub(
        lambda m: m.group(1) + canonicalize_absolute_path(m.group(2), workspace_path), text
    )


def _normalize_string(
    value: str,
    mask_ids: bool,
    canonicalize_paths: bool,
    strip_nondeterministic_text: bool,
    workspace_path: Optional[str],
) -> str:
    if mask_ids:
        for pattern in VOLATILE_ID_PATTERNS:
            value = pattern.sub(ID_MASK, value)
    if canonicalize_paths:
        value = canonicalize_path_tokens(value, workspace_path)
    if strip_nondeterministic_text:
        for pattern in NONDETERMINISTIC_TEXT_PATTERNS:
            value = pattern.sub(NONDET_MASK, value)
    return value


def _normalize_value(value: Any, **options: Any) -> Any:
    if isinstance(value, str):
        return _normalize_string(value, **options)
    if isinstance(value, list):
        return [_normalize_value(v, **options) for v in value]
    if isinstance(value, dict):
        return {k: _normalize_value(v, **options) for k, v in value.items()}
    return value


def normalize_trace_events(
    events: Sequence[TraceEvent],
    workspace_path: Optional[str] = None,
    mask_ids: Optional[bool] = None,
    canonicalize_timestamps: Optional[bool] = None,
    canonicalize_paths: Optional[bool] = None,
    strip_nondeterministic_text: Optional[bool] = None,
) -> List[TraceEvent]:
    """Return normalized copies of events. Flags left as None are on."""
    base_ts = events[0].timestamp_ms if events else 0
    string_options: Dict[str, Any] = {
        "mask_ids": mask_ids is not False,
        "canonicalize_paths": canonicalize_paths is not False,
        "strip_nondeterministic_text": strip_nondeterministic_text is not False,
        "workspace_path": workspace_path,
    }
    shift_timestamps = canonicalize_timestamps is not False

    normalized: List[TraceEvent] = []
    for event in events:
        normalized.append(
            dataclasses.replace(
                event,
                timestamp_ms=max(0, event.timestamp_ms - base_ts) if shift_timestamps else event.timestamp_ms,
                action_canonical=canonicalize_action(event.action_raw) or event.action_canonical,
                tool_name=event.tool_name.strip() if event.tool_name else event.tool_name,
                payload=(
                    _normalize_value(event.payload, **string_options) if event.payload is not None else None
                ),
            )
        )
    return normalized


def normalize_options_for(scenario: Scenario) -> Dict[str, Optional[bool]]:
    """Normalization flags of a scenario, as keyword arguments."""
    config = scenario.normalization
    if config is None:
        return {}
    return {
        "mask_ids": config.mask_ids,
        "canonicalize_timestamps": config.canonicalize_timestamps,
        "canonicalize_paths": config.canonicalize_paths,
        "strip_nondeterministic_text": config.strip_nondeterministic_text,
    }
