"""Comparator profile: tunable knobs for drift checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

from .documents import load_document
from .errors import ProfileValidationError

DEFAULT_PROFILE_NAME = "default-replay-profile"
DEFAULT_HANDOFF_TARGET = "Coordinator"


@dataclass(frozen=True)
class ComparatorProfile:
    profile_name: str = DEFAULT_PROFILE_NAME
    strict_default: bool = True
    ignore_optional_tools: List[str] = field(default_factory=list)
    compare_reason_class: bool = True
    require_handoff_before_complete: bool = True
    require_confirmation_before_gated_updates: bool = True
    required_handoff_target: str = DEFAULT_HANDOFF_TARGET
    require_all_signatures: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile_name": self.profile_name,
            "tool_order": {
                "strict_default": self.strict_default,
                "ignore_optional_tools": list(self.ignore_optional_tools),
            },
            "authorization": {"compare_reason_class": self.compare_reason_class},
            "flow": {
                "require_handoff_before_complete": self.require_handoff_before_complete,
                "require_confirmation_before_gated_updates": self.require_confirmation_before_gated_updates,
                "required_handoff_target": self.required_handoff_target,
            },
            "success_signatures": {"require_all": self.require_all_signatures},
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "ComparatorProfile":
        """Build a profile from its nested JSON shape, filling defaults.

        Raises:
            ProfileValidationError: If a present field has the wrong type.
        """
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise ProfileValidationError("comparator profile must be an object.")

        tool_order = _section(raw, "tool_order")
        authorization = _section(raw, "authorization")
        flow = _section(raw, "flow")
        signatures = _section(raw, "success_signatures")

        ignored = tool_order.get("ignore_optional_tools", [])
        if not isinstance(ignored, list) or not all(isinstance(t, str) for t in ignored):
            raise ProfileValidationError("tool_order.ignore_optional_tools must be an array of strings.")

        return cls(
            profile_name=_typed(raw, "profile_name", str, DEFAULT_PROFILE_NAME, "profile_name"),
            strict_default=_typed(tool_order, "strict_default", bool, True, "tool_order.strict_default"),
            ignore_optional_tools=list(ignored),
            compare_reason_class=_typed(
                authorization, "compare_reason_class", bool, True, "authorization.compare_reason_class"
            ),
            require_handoff_before_complete=_typed(
                flow, "require_handoff_before_complete", bool, True, "flow.require_handoff_before_complete"
            ),
            require_confirmation_before_gated_updates=_typed(
                flow,
                "require_confirmation_before_gated_updates",
                bool,
                True,
                "flow.require_confirmation_before_gated_updates",
            ),
            required_handoff_target=_typed(
                flow, "required_handoff_target", str, DEFAULT_HANDOFF_TARGET, "flow.required_handoff_target"
            ),
            require_all_signatures=_typed(
                signatures, "require_all", bool, True, "success_signatures.require_all"
            ),
        )


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ProfileValidationError(f"{key} must be an object.")
    return value


def _typed(section: Mapping[str, Any], key: str, kind: type, default: Any, label: str) -> Any:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ProfileValidationError(f"{label} must be a {kind.__name__}.")
    return value


def load_comparator_profile(path: str) -> ComparatorProfile:
    return ComparatorProfile.from_dict(load_document(path))
