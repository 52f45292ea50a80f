"""
Scenario suite schema: parsing, normalization and selection.

Parsing is pure. Raw suites (from JSON or YAML) are validated and
normalized into frozen Scenario records; any violation raises
ScenarioSchemaError.

Normalization guarantees:
- scenario_id is upper snake-case and unique within a suite
- Tags are lower-cased tokens, explicit tags first, then tags synthesized
  from tag_metadata, without duplicates
- Wait steps never exceed stabilization.wait_budget_ms when a budget is set
- scenario_digest is the SHA-256 of the stable JSON of the scenario without
  its digest, so re-parsing a serialized scenario reproduces the digest
"""

from __future__ import annotations

import dataclasses
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..version import SCENARIO_SCHEMA_VERSION
from .canon import drop_none, sha256_hex, stable_json
from .documents import load_document
from .errors import ScenarioSchemaError, SelectionError
from .types import AuthOutcome, CheckType, Severity, TerminalSurface

SCENARIO_ID_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

STEP_KINDS = ("user", "tool", "wait")
RUNTIME_MODES = ("headless", "interactive")
DETERMINISM_LEVELS = ("strict", "moderate", "loose")
RISK_TIERS = ("p0", "p1", "p2")
PRIORITIES = ("high", "medium", "low")

DEFAULT_WAIT_MS = 100
DRIVER = "copilot-sdk"


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class WorkspaceRef:
    workspace_path: str
    workspace_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"workspace_path": self.workspace_path, "workspace_id": self.workspace_id}


@dataclass(frozen=True)
class RuntimeConfig:
    mode: str = "headless"
    terminal_surface: TerminalSurface = TerminalSurface.AUTO

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode, "terminal_surface": self.terminal_surface.value}


@dataclass(frozen=True)
class ScenarioStep:
    kind: str
    id: str
    prompt: Optional[str] = None
    tool: Optional[str] = None
    action: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    wait_ms: Optional[float] = None
    expect_auth: Optional[AuthOutcome] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "kind": self.kind,
                "id": self.id,
                "prompt": self.prompt,
                "tool": self.tool,
                "action": self.action,
                "args": self.args,
                "wait_ms": self.wait_ms,
                "expect_auth": self.expect_auth.value if self.expect_auth else None,
                "metadata": self.metadata,
            }
        )


@dataclass(frozen=True)
class CheckSpec:
    id: str
    type: CheckType
    severity: Severity = Severity.MEDIUM
    required: bool = True
    strict_order: Optional[bool] = None
    expected: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "id": self.id,
                "type": self.type.value,
                "severity": self.severity.value,
                "required": self.required,
                "strict_order": self.strict_order,
                "expected": self.expected,
                "metadata": self.metadata,
            }
        )


@dataclass(frozen=True)
class SuccessSignature:
    must_include: List[str]
    allow_missing: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"must_include": list(self.must_include), "allow_missing": list(self.allow_missing)}


@dataclass(frozen=True)
class Expectations:
    success_signature: SuccessSignature
    checks: List[CheckSpec] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_signature": self.success_signature.to_dict(),
            "checks": [c.to_dict() for c in self.checks],
        }


@dataclass(frozen=True)
class TagMetadata:
    domain: Optional[str] = None
    surface: Optional[str] = None
    risk: Optional[str] = None
    priority: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {"domain": self.domain, "surface": self.surface, "risk": self.risk, "priority": self.priority}
        )


@dataclass(frozen=True)
class StabilizationControls:
    fixture_seed: Optional[int] = None
    frozen_clock_delta_ms: Optional[int] = None
    wait_budget_ms: Optional[int] = None
    resolver_fixture_tree: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "fixture_seed": self.fixture_seed,
                "frozen_clock_delta_ms": self.frozen_clock_delta_ms,
                "wait_budget_ms": self.wait_budget_ms,
                "resolver_fixture_tree": self.resolver_fixture_tree,
            }
        )


@dataclass(frozen=True)
class AcceptanceThresholds:
    max_total_drifts: Optional[int] = None
    max_high_severity_drifts: Optional[int] = None
    max_medium_severity_drifts: Optional[int] = None
    max_low_severity_drifts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "max_total_drifts": self.max_total_drifts,
                "max_high_severity_drifts": self.max_high_severity_drifts,
                "max_medium_severity_drifts": self.max_medium_severity_drifts,
                "max_low_severity_drifts": self.max_low_severity_drifts,
            }
        )


@dataclass(frozen=True)
class TimeoutConfig:
    run_timeout_ms: Optional[float] = None
    step_timeout_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none({"run_timeout_ms": self.run_timeout_ms, "step_timeout_ms": self.step_timeout_ms})


@dataclass(frozen=True)
class NormalizationConfig:
    """Per-scenario normalization flags. None means "not specified"."""

    mask_ids: Optional[bool] = None
    canonicalize_timestamps: Optional[bool] = None
    canonicalize_paths: Optional[bool] = None
    strip_nondeterministic_text: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "mask_ids": self.mask_ids,
                "canonicalize_timestamps": self.canonicalize_timestamps,
                "canonicalize_paths": self.canonicalize_paths,
                "strip_nondeterministic_text": self.strip_nondeterministic_text,
            }
        )


@dataclass(frozen=True)
class Scenario:
    """A normalized, validated replay scenario."""

    scenario_id: str
    title: str
    intent: str
    workspace: WorkspaceRef
    runtime: RuntimeConfig
    steps: List[ScenarioStep]
    expectations: Expectations
    schema_version: str = SCENARIO_SCHEMA_VERSION
    driver: str = DRIVER
    tags: List[str] = field(default_factory=list)
    tag_metadata: Optional[TagMetadata] = None
    stabilization: Optional[StabilizationControls] = None
    acceptance_thresholds: Optional[AcceptanceThresholds] = None
    source_refs: List[str] = field(default_factory=list)
    determinism: str = "strict"
    timeouts: Optional[TimeoutConfig] = None
    normalization: Optional[NormalizationConfig] = None
    metadata: Optional[Dict[str, Any]] = None
    scenario_digest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "schema_version": self.schema_version,
                "scenario_id": self.scenario_id,
                "title": self.title,
                "intent": self.intent,
                "driver": self.driver,
                "workspace": self.workspace.to_dict(),
                "runtime": self.runtime.to_dict(),
                "steps": [s.to_dict() for s in self.steps],
                "expectations": self.expectations.to_dict(),
                "tags": list(self.tags),
                "tag_metadata": self.tag_metadata.to_dict() if self.tag_metadata else None,
                "stabilization": self.stabilization.to_dict() if self.stabilization else None,
                "acceptance_thresholds": (
                    self.acceptance_thresholds.to_dict() if self.acceptance_thresholds else None
                ),
                "source_refs": list(self.source_refs),
                "determinism": self.determinism,
                "timeouts": self.timeouts.to_dict() if self.timeouts else None,
                "normalization": self.normalization.to_dict() if self.normalization else None,
                "metadata": self.metadata,
                "scenario_digest": self.scenario_digest,
            }
        )


@dataclass(frozen=True)
class ScenarioSuite:
    scenarios: List[Scenario]
    schema_version: str = SCENARIO_SCHEMA_VERSION

    def scenario_ids(self) -> List[str]:
        return [s.scenario_id for s in self.scenarios]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "scenarios": [s.to_dict() for s in self.scenarios],
        }


# =============================================================================
# Field coercion
# =============================================================================


def _require_object(value: Any, context: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ScenarioSchemaError(f"{context} must be an object.")
    return value


def _require_string(value: Any, context: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ScenarioSchemaError(f"{context} must be a non-empty string.")
    return value.strip()


def _optional_object(value: Any) -> Optional[Dict[str, Any]]:
    return dict(value) if isinstance(value, Mapping) else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_negative_int(value: Any) -> Optional[int]:
    if not _is_number(value) or not math.isfinite(value):
        return None
    return int(math.floor(value)) if value >= 0 else None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def normalize_scenario_id(raw: str) -> str:
    normalized = re.sub(r"[^A-Z0-9]+", "_", raw.strip().upper()).strip("_")
    if not SCENARIO_ID_PATTERN.match(normalized):
        raise ScenarioSchemaError(
            f"scenario_id '{raw}' cannot be normalized to a valid uppercase snake-case ID."
        )
    return normalized


def normalize_terminal_surface(value: Any) -> TerminalSurface:
    try:
        return TerminalSurface(value)
    except ValueError:
        return TerminalSurface.AUTO


def normalize_tag_token(value: str) -> str:
    return re.sub(r"[^a-z0-9._:-]+", "-", value.strip().lower()).strip("-")


def normalize_tags(raw_tags: Any, tag_metadata: Optional[Mapping[str, Any]]) -> List[str]:
    tokens = [normalize_tag_token(t) for t in _string_list(raw_tags)]
    if tag_metadata:
        for key in ("domain", "surface", "risk", "priority"):
            if isinstance(tag_metadata.get(key), str):
                tokens.append(normalize_tag_token(f"{key}:{tag_metadata[key]}"))

    tags: List[str] = []
    for token in tokens:
        if token and token not in tags:
            tags.append(token)
    return tags


# =============================================================================
# Parsing
# =============================================================================


def _parse_checks(value: Any, scenario_id: str) -> List[CheckSpec]:
    if not isinstance(value, list):
        return []

    checks: List[CheckSpec] = []
    for index, entry in enumerate(value):
        raw = _require_object(entry, f"checks[{index}]")
        check_id = _require_string(raw.get("id") or f"CHECK_{index + 1}", f"checks[{index}].id")
        check_type = _require_string(raw.get("type"), f"checks[{index}].type")
        severity = _require_string(raw.get("severity") or "medium", f"checks[{index}].severity")

        try:
            parsed_type = CheckType(check_type)
        except ValueError:
            raise ScenarioSchemaError(
                f"checks[{index}] in {scenario_id} has unsupported type '{check_type}'.",
                scenario_id=scenario_id,
            ) from None
        try:
            parsed_severity = Severity(severity)
        except ValueError:
            raise ScenarioSchemaError(
                f"checks[{index}] in {scenario_id} has unsupported severity '{severity}'.",
                scenario_id=scenario_id,
            ) from None

        expected = raw.get("expected")
        checks.append(
            CheckSpec(
                id=check_id,
                type=parsed_type,
                severity=parsed_severity,
                required=raw["required"] if isinstance(raw.get("required"), bool) else True,
                strict_order=raw["strict_order"] if isinstance(raw.get("strict_order"), bool) else None,
                expected=expected if isinstance(expected, (str, list)) else None,
                metadata=_optional_object(raw.get("metadata")),
            )
        )
    return checks


def _parse_steps(value: Any, scenario_id: str) -> List[ScenarioStep]:
    if not isinstance(value, list) or not value:
        raise ScenarioSchemaError(f"{scenario_id} must declare at least one step.", scenario_id=scenario_id)

    steps: List[ScenarioStep] = []
    for index, entry in enumerate(value):
        context = f"{scenario_id}.steps[{index}]"
        raw = _require_object(entry, context)
        kind = _require_string(raw.get("kind"), f"{context}.kind")
        if kind not in STEP_KINDS:
            raise ScenarioSchemaError(
                f"{context} has unsupported kind '{kind}'.", scenario_id=scenario_id
            )

        fields: Dict[str, Any] = {
            "kind": kind,
            "id": raw["id"] if isinstance(raw.get("id"), str) else f"step_{index + 1}",
            "metadata": _optional_object(raw.get("metadata")),
        }

        if kind == "user":
            fields["prompt"] = _require_string(raw.get("prompt"), f"{context}.prompt")
        elif kind == "tool":
            fields["tool"] = _require_string(raw.get("tool"), f"{context}.tool")
            fields["action"] = raw["action"] if isinstance(raw.get("action"), str) else "run"
            fields["args"] = _optional_object(raw.get("args"))
            if raw.get("expect_auth") in {o.value for o in AuthOutcome}:
                fields["expect_auth"] = AuthOutcome(raw["expect_auth"])
        else:
            wait_ms = raw["wait_ms"] if _is_number(raw.get("wait_ms")) else DEFAULT_WAIT_MS
            fields["wait_ms"] = wait_ms if wait_ms > 0 else DEFAULT_WAIT_MS

        steps.append(ScenarioStep(**fields))
    return steps


def _parse_tag_metadata(raw: Optional[Mapping[str, Any]]) -> Optional[TagMetadata]:
    if raw is None:
        return None
    return TagMetadata(
        domain=raw["domain"].strip() if isinstance(raw.get("domain"), str) else None,
        surface=raw["surface"].strip() if isinstance(raw.get("surface"), str) else None,
        risk=raw.get("risk") if raw.get("risk") in RISK_TIERS else None,
        priority=raw.get("priority") if raw.get("priority") in PRIORITIES else None,
    )


def _parse_stabilization(raw: Optional[Mapping[str, Any]]) -> Optional[StabilizationControls]:
    if raw is None:
        return None
    tree = raw.get("resolver_fixture_tree")
    return StabilizationControls(
        fixture_seed=_non_negative_int(raw.get("fixture_seed")),
        frozen_clock_delta_ms=_non_negative_int(raw.get("frozen_clock_delta_ms")),
        wait_budget_ms=_non_negative_int(raw.get("wait_budget_ms")),
        resolver_fixture_tree=tree.strip() if isinstance(tree, str) else None,
    )


def _parse_thresholds(raw: Optional[Mapping[str, Any]]) -> Optional[AcceptanceThresholds]:
    if raw is None:
        return None
    return AcceptanceThresholds(
        max_total_drifts=_non_negative_int(raw.get("max_total_drifts")),
        max_high_severity_drifts=_non_negative_int(raw.get("max_high_severity_drifts")),
        max_medium_severity_drifts=_non_negative_int(raw.get("max_medium_severity_drifts")),
        max_low_severity_drifts=_non_negative_int(raw.get("max_low_severity_drifts")),
    )


def _parse_timeouts(raw: Optional[Mapping[str, Any]]) -> Optional[TimeoutConfig]:
    if raw is None:
        return None
    return TimeoutConfig(
        run_timeout_ms=raw["run_timeout_ms"] if _is_number(raw.get("run_timeout_ms")) else None,
        step_timeout_ms=raw["step_timeout_ms"] if _is_number(raw.get("step_timeout_ms")) else None,
    )


def _parse_normalization(raw: Optional[Mapping[str, Any]]) -> Optional[NormalizationConfig]:
    if raw is None:
        return None
    return NormalizationConfig(
        mask_ids=bool(raw.get("mask_ids")),
        canonicalize_timestamps=bool(raw.get("canonicalize_timestamps")),
        canonicalize_paths=bool(raw.get("canonicalize_paths")),
        strip_nondeterministic_text=bool(raw.get("strip_nondeterministic_text")),
    )


def _apply_wait_budget(steps: List[ScenarioStep], budget: Optional[int]) -> List[ScenarioStep]:
    if not budget or budget <= 0:
        return steps
    return [
        dataclasses.replace(step, wait_ms=min(step.wait_ms or DEFAULT_WAIT_MS, budget))
        if step.kind == "wait"
        else step
        for step in steps
    ]


def compute_scenario_digest(scenario: Scenario) -> str:
    """SHA-256 over the stable JSON of the scenario, excluding its digest."""
    payload = scenario.to_dict()
    payload.pop("scenario_digest", None)
    return sha256_hex(stable_json(payload).encode("utf-8"))


def parse_scenario(raw: Any, index: int = 0) -> Scenario:
    """Validate and normalize one raw scenario object."""
    source = _require_object(raw, f"scenarios[{index}]")
    scenario_id = normalize_scenario_id(
        _require_string(source.get("scenario_id"), f"scenarios[{index}].scenario_id")
    )

    workspace = _require_object(source.get("workspace"), f"{scenario_id}.workspace")
    runtime = _require_object(source.get("runtime"), f"{scenario_id}.runtime")
    expectations = _require_object(source.get("expectations"), f"{scenario_id}.expectations")
    signature = _require_object(
        expectations.get("success_signature"), f"{scenario_id}.expectations.success_signature"
    )

    must_include = [s for s in _string_list(signature.get("must_include")) if s]
    if not must_include:
        raise ScenarioSchemaError(
            f"{scenario_id} must include at least one success signature.", scenario_id=scenario_id
        )

    tag_metadata = source.get("tag_metadata") if isinstance(source.get("tag_metadata"), Mapping) else None
    stabilization = _parse_stabilization(_optional_object(source.get("stabilization")))
    determinism = source.get("determinism")

    scenario = Scenario(
        scenario_id=scenario_id,
        title=_require_string(source.get("title"), f"{scenario_id}.title"),
        intent=_require_string(source.get("intent"), f"{scenario_id}.intent"),
        workspace=WorkspaceRef(
            workspace_path=_require_string(
                workspace.get("workspace_path"), f"{scenario_id}.workspace.workspace_path"
            ),
            workspace_id=_require_string(
                workspace.get("workspace_id"), f"{scenario_id}.workspace.workspace_id"
            ),
        ),
        runtime=RuntimeConfig(
            mode="interactive" if runtime.get("mode") == "interactive" else "headless",
            terminal_surface=normalize_terminal_surface(runtime.get("terminal_surface")),
        ),
        steps=_apply_wait_budget(
            _parse_steps(source.get("steps"), scenario_id),
            stabilization.wait_budget_ms if stabilization else None,
        ),
        expectations=Expectations(
            success_signature=SuccessSignature(
                must_include=must_include,
                allow_missing=_string_list(signature.get("allow_missing")),
            ),
            checks=_parse_checks(expectations.get("checks"), scenario_id),
        ),
        tags=normalize_tags(source.get("tags"), tag_metadata),
        tag_metadata=_parse_tag_metadata(tag_metadata),
        stabilization=stabilization,
        acceptance_thresholds=_parse_thresholds(_optional_object(source.get("acceptance_thresholds"))),
        source_refs=_string_list(source.get("source_refs")),
        determinism=determinism if determinism in DETERMINISM_LEVELS else "strict",
        timeouts=_parse_timeouts(_optional_object(source.get("timeouts"))),
        normalization=_parse_normalization(_optional_object(source.get("normalization"))),
        metadata=_optional_object(source.get("metadata")),
    )
    return dataclasses.replace(scenario, scenario_digest=compute_scenario_digest(scenario))


def parse_scenario_suite(raw: Any) -> ScenarioSuite:
    """Validate a raw suite document and normalize every scenario.

    Raises:
        ScenarioSchemaError: On any schema violation, including duplicate
            normalized scenario ids (all duplicates are reported together).
    """
    source = _require_object(raw, "scenario suite")
    raw_scenarios = source.get("scenarios")
    if not isinstance(raw_scenarios, list):
        raise ScenarioSchemaError("scenario suite must include a scenarios array.")

    scenarios = [parse_scenario(entry, index) for index, entry in enumerate(raw_scenarios)]

    seen = set()
    duplicates: List[str] = []
    for scenario in scenarios:
        if scenario.scenario_id in seen and scenario.scenario_id not in duplicates:
            duplicates.append(scenario.scenario_id)
        seen.add(scenario.scenario_id)

    if duplicates:
        raise ScenarioSchemaError(
            f"duplicate scenario_id values found: {', '.join(duplicates)}",
            duplicates=duplicates,
        )

    return ScenarioSuite(scenarios=scenarios)


def load_scenario_suite(path: str) -> ScenarioSuite:
    return parse_scenario_suite(load_document(path))


# =============================================================================
# Selection
# =============================================================================


def filter_by_ids(scenarios: Sequence[Scenario], ids: Optional[Iterable[str]] = None) -> List[Scenario]:
    requested = {i.strip().upper() for i in ids or []}
    if not requested:
        return list(scenarios)
    return [s for s in scenarios if s.scenario_id in requested]


def filter_by_tags(scenarios: Sequence[Scenario], tags: Optional[Iterable[str]] = None) -> List[Scenario]:
    """Keep scenarios carrying at least one of the given tags."""
    wanted = {t.strip().lower() for t in tags or [] if t.strip()}
    if not wanted:
        return list(scenarios)
    return [s for s in scenarios if wanted & {t.lower() for t in s.tags}]


def shard_scenarios(
    scenarios: Sequence[Scenario],
    shard_index: Optional[int] = None,
    shard_count: Optional[int] = None,
) -> List[Scenario]:
    """Deterministic shard: sort by id, keep positions where index % count == shard."""
    if shard_index is None or shard_count is None:
        return list(scenarios)
    if shard_count <= 0 or shard_index < 0 or shard_index >= shard_count:
        raise SelectionError(
            f"Invalid shard arguments: shard-index={shard_index}, shard-count={shard_count}."
        )
    ordered = sorted(scenarios, key=lambda s: s.scenario_id)
    return [s for i, s in enumerate(ordered) if i % shard_count == shard_index]


def select_scenarios(
    scenarios: Sequence[Scenario],
    ids: Optional[Iterable[str]] = None,
    tags: Optional[Iterable[str]] = None,
    shard_index: Optional[int] = None,
    shard_count: Optional[int] = None,
) -> List[Scenario]:
    """Apply id filter, then tag filter, then sharding."""
    by_id = filter_by_ids(scenarios, ids)
    by_tag = filter_by_tags(by_id, tags)
    return shard_scenarios(by_tag, shard_index, shard_count)
