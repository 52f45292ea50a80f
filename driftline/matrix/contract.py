"""
Matrix run contract: six axes whose Cartesian product defines the cells of
a matrix run, plus determinism controls and per-risk-tier policies.

Contracts are JSON or YAML documents with schema_version
"replay-matrix-run-contract.v1". Validation failures raise
ContractValidationError with the dotted path of the offending field.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..core.canon import drop_none
from ..core.determinism import DEFAULT_LOCALE, DEFAULT_TZ, DeterminismConfig
from ..core.documents import load_document
from ..core.errors import ContractValidationError
from ..core.scenario import RISK_TIERS, NormalizationConfig, Scenario
from ..core.types import GateMode, TerminalSurface
from ..version import MATRIX_CONTRACT_SCHEMA_VERSION

AXIS_NAMES = (
    "model_variant",
    "comparator_profile",
    "scenario_slice",
    "execution_surface",
    "gate_mode",
    "normalization_profile",
)

SLICE_MATCH_MODES = ("any", "all")


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class ModelVariant:
    model_id: str
    label: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none({"model_id": self.model_id, "label": self.label, "metadata": self.metadata})


@dataclass(frozen=True)
class ComparatorProfileVariant:
    profile_id: str
    profile_path: str

    def to_dict(self) -> Dict[str, Any]:
        return {"profile_id": self.profile_id, "profile_path": self.profile_path}


@dataclass(frozen=True)
class ScenarioSlice:
    slice_id: str
    tags: List[str]
    risk_tier: str
    match: str = "any"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slice_id": self.slice_id,
            "tags": list(self.tags),
            "match": self.match,
            "risk_tier": self.risk_tier,
        }


@dataclass(frozen=True)
class NormalizationProfile:
    normalization_id: str
    config: NormalizationConfig

    def to_dict(self) -> Dict[str, Any]:
        return {"normalization_id": self.normalization_id, "config": self.config.to_dict()}


@dataclass(frozen=True)
class DeterminismControls:
    fixed_tz: str = DEFAULT_TZ
    fixed_locale: str = DEFAULT_LOCALE
    normalization_required: bool = True
    retry_once_classification: bool = True
    fingerprint_stability_check: bool = True

    def to_determinism_config(self) -> DeterminismConfig:
        return DeterminismConfig(tz=self.fixed_tz, locale=self.fixed_locale)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fixed_tz": self.fixed_tz,
            "fixed_locale": self.fixed_locale,
            "normalization_required": self.normalization_required,
            "retry_once_classification": self.retry_once_classification,
            "fingerprint_stability_check": self.fingerprint_stability_check,
        }


@dataclass(frozen=True)
class RiskTierPolicy:
    max_high_severity_drifts: Optional[int] = None
    max_medium_severity_drifts: Optional[int] = None
    max_low_severity_drifts: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return drop_none(
            {
                "max_high_severity_drifts": self.max_high_severity_drifts,
                "max_medium_severity_drifts": self.max_medium_severity_drifts,
                "max_low_severity_drifts": self.max_low_severity_drifts,
            }
        )


@dataclass(frozen=True)
class MatrixRunContract:
    matrix_id: str
    model_variants: List[ModelVariant]
    comparator_profiles: List[ComparatorProfileVariant]
    scenario_tag_slices: List[ScenarioSlice]
    execution_surfaces: List[TerminalSurface]
    gate_modes: List[GateMode]
    normalization_profiles: List[NormalizationProfile]
    determinism: DeterminismControls = field(default_factory=DeterminismControls)
    risk_tiers: Optional[Dict[str, RiskTierPolicy]] = None
    title: Optional[str] = None
    run_metadata: Optional[Dict[str, Any]] = None
    schema_version: str = MATRIX_CONTRACT_SCHEMA_VERSION

    def risk_tier_policy(self, tier: str) -> Optional[RiskTierPolicy]:
        return (self.risk_tiers or {}).get(tier)

    def to_dict(self) -> Dict[str, Any]:
        controls: Dict[str, Any] = {"determinism": self.determinism.to_dict()}
        if self.risk_tiers is not None:
            controls["risk_tiers"] = {k: v.to_dict() for k, v in self.risk_tiers.items()}
        return drop_none(
            {
                "schema_version": self.schema_version,
                "matrix_id": self.matrix_id,
                "title": self.title,
                "run_metadata": self.run_metadata,
                "axes": {
                    "model_variants": [m.to_dict() for m in self.model_variants],
                    "comparator_profiles": [p.to_dict() for p in self.comparator_profiles],
                    "scenario_tag_slices": [s.to_dict() for s in self.scenario_tag_slices],
                    "execution_surfaces": [s.value for s in self.execution_surfaces],
                    "gate_modes": [g.value for g in self.gate_modes],
                    "normalization_profiles": [n.to_dict() for n in self.normalization_profiles],
                },
                "controls": controls,
            }
        )


@dataclass(frozen=True)
class MatrixCellAxes:
    model_variant: ModelVariant
    comparator_profile: ComparatorProfileVariant
    scenario_slice: ScenarioSlice
    execution_surface: TerminalSurface
    gate_mode: GateMode
    normalization_profile: NormalizationProfile

    def axis_ids(self) -> Dict[str, str]:
        """The identifying value of each axis, keyed by axis name."""
        return {
            "model_variant": self.model_variant.model_id,
            "comparator_profile": self.comparator_profile.profile_id,
            "scenario_slice": self.scenario_slice.slice_id,
            "execution_surface": self.execution_surface.value,
            "gate_mode": self.gate_mode.value,
            "normalization_profile": self.normalization_profile.normalization_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_variant": self.model_variant.to_dict(),
            "comparator_profile": self.comparator_profile.to_dict(),
            "scenario_slice": self.scenario_slice.to_dict(),
            "execution_surface": self.execution_surface.value,
            "gate_mode": self.gate_mode.value,
            "normalization_profile": self.normalization_profile.to_dict(),
        }


@dataclass(frozen=True)
class MatrixCellDefinition:
    cell_id: str
    axes: MatrixCellAxes

    def to_dict(self) -> Dict[str, Any]:
        return {"cell_id": self.cell_id, "axes": self.axes.to_dict()}


# =============================================================================
# Parsing
# =============================================================================


def _object(value: Any, context: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ContractValidationError(f"{context} must be an object.")
    return value


def _non_empty_string(value: Any, context: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ContractValidationError(f"{context} must be a non-empty string.")
    return value.strip()


def _axis_entries(axes: Mapping[str, Any], name: str) -> List[Any]:
    value = axes.get(name)
    if not isinstance(value, list) or not value:
        raise ContractValidationError(f"axes.{name} must be a non-empty array.")
    return value


def _parse_model_variants(axes: Mapping[str, Any]) -> List[ModelVariant]:
    variants = []
    for i, entry in enumerate(_axis_entries(axes, "model_variants")):
        ctx = f"axes.model_variants[{i}]"
        source = _object(entry, ctx)
        label = source.get("label")
        metadata = source.get("metadata")
        variants.append(
            ModelVariant(
                model_id=_non_empty_string(source.get("model_id"), f"{ctx}.model_id"),
                label=label.strip() if isinstance(label, str) else None,
                metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
            )
        )
    return variants


def _parse_comparator_profiles(axes: Mapping[str, Any]) -> List[ComparatorProfileVariant]:
    profiles = []
    for i, entry in enumerate(_axis_entries(axes, "comparator_profiles")):
        ctx = f"axes.comparator_profiles[{i}]"
        source = _object(entry, ctx)
        profiles.append(
            ComparatorProfileVariant(
                profile_id=_non_empty_string(source.get("profile_id"), f"{ctx}.profile_id"),
                profile_path=_non_empty_string(source.get("profile_path"), f"{ctx}.profile_path"),
            )
        )
    return profiles


def _parse_risk_tier(value: Any, context: str) -> str:
    if value not in RISK_TIERS:
        raise ContractValidationError(f"{context} must be one of: {', '.join(RISK_TIERS)}.")
    return value


def _parse_scenario_slices(axes: Mapping[str, Any]) -> List[ScenarioSlice]:
    slices = []
    for i, entry in enumerate(_axis_entries(axes, "scenario_tag_slices")):
        ctx = f"axes.scenario_tag_slices[{i}]"
        source = _object(entry, ctx)
        raw_tags = source.get("tags")
        tags = [
            t.strip().lower()
            for t in (raw_tags if isinstance(raw_tags, list) else [])
            if isinstance(t, str) and t.strip()
        ]
        if not tags:
            raise ContractValidationError(f"{ctx}.tags must include at least one tag.")
        slices.append(
            ScenarioSlice(
                slice_id=_non_empty_string(source.get("slice_id"), f"{ctx}.slice_id"),
                tags=tags,
                match="all" if source.get("match") == "all" else "any",
                risk_tier=_parse_risk_tier(source.get("risk_tier"), f"{ctx}.risk_tier"),
            )
        )
    return slices


def _parse_execution_surfaces(axes: Mapping[str, Any]) -> List[TerminalSurface]:
    allowed = ("auto", "memory_terminal", "memory_terminal_interactive")
    surfaces = []
    for i, entry in enumerate(_axis_entries(axes, "execution_surfaces")):
        if entry not in allowed:
            raise ContractValidationError(f"axes.execution_surfaces[{i}] must be one of: {', '.join(allowed)}.")
        surfaces.append(TerminalSurface(entry))
    return surfaces


def _parse_gate_modes(axes: Mapping[str, Any]) -> List[GateMode]:
    allowed = [m.value for m in GateMode]
    modes = []
    for i, entry in enumerate(_axis_entries(axes, "gate_modes")):
        if entry not in allowed:
            raise ContractValidationError(f"axes.gate_modes[{i}] must be one of: {', '.join(allowed)}.")
        modes.append(GateMode(entry))
    return modes


def _parse_normalization_profiles(axes: Mapping[str, Any]) -> List[NormalizationProfile]:
    profiles = []
    for i, entry in enumerate(_axis_entries(axes, "normalization_profiles")):
        ctx = f"axes.normalization_profiles[{i}]"
        source = _object(entry, ctx)
        config = _object(source.get("config"), f"{ctx}.config")
        profiles.append(
            NormalizationProfile(
                normalization_id=_non_empty_string(source.get("normalization_id"), f"{ctx}.normalization_id"),
                config=NormalizationConfig(
                    mask_ids=config.get("mask_ids") is True,
                    canonicalize_timestamps=config.get("canonicalize_timestamps") is True,
                    canonicalize_paths=config.get("canonicalize_paths") is True,
                    strip_nondeterministic_text=config.get("strip_nondeterministic_text") is True,
                ),
            )
        )
    return profiles


def _parse_determinism(raw: Mapping[str, Any]) -> DeterminismControls:
    tz = raw.get("fixed_tz")
    locale = raw.get("fixed_locale")
    return DeterminismControls(
        fixed_tz=_non_empty_string(DEFAULT_TZ if tz is None else tz, "controls.determinism.fixed_tz"),
        fixed_locale=_non_empty_string(
            DEFAULT_LOCALE if locale is None else locale, "controls.determinism.fixed_locale"
        ),
        normalization_required=raw.get("normalization_required") is not False,
        retry_once_classification=raw.get("retry_once_classification") is not False,
        fingerprint_stability_check=raw.get("fingerprint_stability_check") is not False,
    )


def _optional_count(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _parse_risk_tiers(raw: Any) -> Optional[Dict[str, RiskTierPolicy]]:
    if not isinstance(raw, Mapping):
        return None
    policies: Dict[str, RiskTierPolicy] = {}
    for tier in RISK_TIERS:
        policy = raw.get(tier)
        if not isinstance(policy, Mapping):
            continue
        policies[tier] = RiskTierPolicy(
            max_high_severity_drifts=_optional_count(policy.get("max_high_severity_drifts")),
            max_medium_severity_drifts=_optional_count(policy.get("max_medium_severity_drifts")),
            max_low_severity_drifts=_optional_count(policy.get("max_low_severity_drifts")),
        )
    return policies


def parse_matrix_run_contract(raw: Any) -> MatrixRunContract:
    """Validate a decoded contract document.

    Raises:
        ContractValidationError: On an unsupported schema version or any
            malformed field.
    """
    source = _object(raw, "matrix contract")
    schema_version = _non_empty_string(source.get("schema_version"), "schema_version")
    if schema_version != MATRIX_CONTRACT_SCHEMA_VERSION:
        raise ContractValidationError(f"Unsupported matrix contract schema_version '{schema_version}'.")

    axes = _object(source.get("axes"), "axes")
    controls = _object(source.get("controls"), "controls")
    determinism = _object(controls.get("determinism"), "controls.determinism")
    title = source.get("title")
    run_metadata = source.get("run_metadata")

    return MatrixRunContract(
        matrix_id=_non_empty_string(source.get("matrix_id"), "matrix_id"),
        title=title.strip() if isinstance(title, str) else None,
        run_metadata=dict(run_metadata) if isinstance(run_metadata, Mapping) else None,
        model_variants=_parse_model_variants(axes),
        comparator_profiles=_parse_comparator_profiles(axes),
        scenario_tag_slices=_parse_scenario_slices(axes),
        execution_surfaces=_parse_execution_surfaces(axes),
        gate_modes=_parse_gate_modes(axes),
        normalization_profiles=_parse_normalization_profiles(axes),
        determinism=_parse_determinism(determinism),
        risk_tiers=_parse_risk_tiers(controls.get("risk_tiers")),
    )


def load_matrix_run_contract(path: str) -> MatrixRunContract:
    return parse_matrix_run_contract(load_document(path))


# =============================================================================
# Selection and expansion
# =============================================================================


def scenario_matches_slice(scenario: Scenario, scenario_slice: ScenarioSlice) -> bool:
    tags = {t.lower() for t in scenario.tags}
    if scenario_slice.match == "all":
        return all(t in tags for t in scenario_slice.tags)
    return any(t in tags for t in scenario_slice.tags)


def select_scenario_ids_for_slice(scenarios: Sequence[Scenario], scenario_slice: ScenarioSlice) -> List[str]:
    return [s.scenario_id for s in scenarios if scenario_matches_slice(s, scenario_slice)]


def expand_matrix_cells(contract: MatrixRunContract) -> List[MatrixCellDefinition]:
    """Cartesian product of the six axes, in axis order.

    The cell id joins each axis value's id with "__".
    """
    cells = []
    for combo in itertools.product(
        contract.model_variants,
        contract.comparator_profiles,
        contract.scenario_tag_slices,
        contract.execution_surfaces,
        contract.gate_modes,
        contract.normalization_profiles,
    ):
        axes = MatrixCellAxes(*combo)
        cell_id = "__".join(axes.axis_ids()[name] for name in AXIS_NAMES)
        cells.append(MatrixCellDefinition(cell_id=cell_id, axes=axes))
    return cells
