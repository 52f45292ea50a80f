"""
Matrix scoring: per-cell composite scores, promotability and the rollups
of a matrix report.

Scores for one cell:
    WDS  weighted drift score, 100 - (20*high + 7*medium + 2*low), clamped to [0, 100]
    SPR  scenario pass rate, passed / total (0 with no scenarios)
    ECI  explainability coverage, explained / total drifts (1 with no drifts)
    BBR  blocker-bucket ratio, blocker drifts / explained (0 when none explained)
    CMS  composite, WDS * SPR minus a flake penalty of 5

Every score is rounded half-up to three decimals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..core.determinism import Clock, utc_now_iso
from ..core.scenario import RISK_TIERS
from ..core.types import ComparisonResult, GateClassification, GateEvaluation, OperatorBucket
from .contract import MatrixCellAxes, MatrixRunContract

FLAKE_PENALTY = 5
SEVERITY_WEIGHTS = (20, 7, 2)


def clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def round3(value: float) -> float:
    return math.floor(value * 1000 + 0.5) / 1000


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class MatrixCellScore:
    wds: float
    spr: float
    eci: float
    bbr: float
    cms: float
    flake_penalty: int
    deterministic_regression: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wds": self.wds,
            "spr": self.spr,
            "eci": self.eci,
            "bbr": self.bbr,
            "cms": self.cms,
            "flake_penalty": self.flake_penalty,
            "deterministic_regression": self.deterministic_regression,
        }


@dataclass(frozen=True)
class MatrixCellResult:
    cell_id: str
    scenario_ids: List[str]
    axes: MatrixCellAxes
    comparison: ComparisonResult
    gate: GateEvaluation
    score: MatrixCellScore
    promotable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "scenario_ids": list(self.scenario_ids),
            "axes": self.axes.to_dict(),
            "comparison": self.comparison.to_dict(),
            "gate": self.gate.to_dict(),
            "score": self.score.to_dict(),
            "promotable": self.promotable,
        }


@dataclass(frozen=True)
class AxisRollupItem:
    axis: str
    axis_value: str
    cell_count: int
    average_cms: float
    average_wds: float
    average_spr: float
    promotable_cells: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "axis": self.axis,
            "axis_value": self.axis_value,
            "cell_count": self.cell_count,
            "average_cms": self.average_cms,
            "average_wds": self.average_wds,
            "average_spr": self.average_spr,
            "promotable_cells": self.promotable_cells,
        }


@dataclass(frozen=True)
class RiskTierSummary:
    risk_tier: str
    cell_count: int
    promotable_cells: int
    deterministic_regressions: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_tier": self.risk_tier,
            "cell_count": self.cell_count,
            "promotable_cells": self.promotable_cells,
            "deterministic_regressions": self.deterministic_regressions,
        }


@dataclass(frozen=True)
class MatrixReport:
    matrix_id: str
    generated_at: str
    run_label: str
    total_cells: int
    promotable_cells: int
    deterministic_regressions: int
    cells: List[MatrixCellResult]
    axis_rollups: List[AxisRollupItem]
    risk_tier_summary: List[RiskTierSummary]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matrix_id": self.matrix_id,
            "generated_at": self.generated_at,
            "run_label": self.run_label,
            "total_cells": self.total_cells,
            "promotable_cells": self.promotable_cells,
            "deterministic_regressions": self.deterministic_regressions,
            "cells": [c.to_dict() for c in self.cells],
            "axis_rollups": [a.to_dict() for a in self.axis_rollups],
            "risk_tier_summary": [r.to_dict() for r in self.risk_tier_summary],
        }


# =============================================================================
# Scoring
# =============================================================================


def score_matrix_cell(comparison: ComparisonResult, gate: GateEvaluation) -> MatrixCellScore:
    summary = comparison.summary
    high, medium, low = (
        summary.high_severity_drifts,
        summary.medium_severity_drifts,
        summary.low_severity_drifts,
    )
    high_w, medium_w, low_w = SEVERITY_WEIGHTS
    wds = clamp(100 - (high_w * high + medium_w * medium + low_w * low), 0, 100)
    spr = summary.passed_scenarios / summary.total_scenarios if summary.total_scenarios > 0 else 0

    total_drifts = high + medium + low
    rollup = summary.explainability_rollup
    explained = rollup.total_explained_drifts if rollup else 0
    blockers = len([d for d in comparison.all_drifts() if d.operator_bucket == OperatorBucket.BLOCKER])
    eci = explained / total_drifts if total_drifts > 0 else 1
    bbr = blockers / explained if explained > 0 else 0

    flake_penalty = FLAKE_PENALTY if gate.classification == GateClassification.INTERMITTENT_FLAKE else 0
    cms = wds * spr - flake_penalty

    return MatrixCellScore(
        wds=round3(wds),
        spr=round3(spr),
        eci=round3(eci),
        bbr=round3(bbr),
        cms=round3(cms),
        flake_penalty=flake_penalty,
        deterministic_regression=gate.classification == GateClassification.DETERMINISTIC_REGRESSION,
    )


def passes_risk_tier_policy(cell: MatrixCellResult, contract: MatrixRunContract) -> bool:
    policy = contract.risk_tier_policy(cell.axes.scenario_slice.risk_tier)
    if policy is None:
        return True
    summary = cell.comparison.summary
    for limit, observed in (
        (policy.max_high_severity_drifts, summary.high_severity_drifts),
        (policy.max_medium_severity_drifts, summary.medium_severity_drifts),
        (policy.max_low_severity_drifts, summary.low_severity_drifts),
    ):
        if limit is not None and observed > limit:
            return False
    return True


def evaluate_matrix_promotable(cell: MatrixCellResult, contract: MatrixRunContract) -> bool:
    if cell.score.deterministic_regression or not cell.gate.passed:
        return False
    return passes_risk_tier_policy(cell, contract)


# =============================================================================
# Report
# =============================================================================

AXIS_VALUE_GETTERS: Dict[str, Callable[[MatrixCellResult], str]] = {
    "model_variant": lambda cell: cell.axes.model_variant.model_id,
    "comparator_profile": lambda cell: cell.axes.comparator_profile.profile_id,
    "scenario_slice": lambda cell: cell.axes.scenario_slice.slice_id,
    "execution_surface": lambda cell: cell.axes.execution_surface.value,
    "gate_mode": lambda cell: cell.axes.gate_mode.value,
    "normalization_profile": lambda cell: cell.axes.normalization_profile.normalization_id,
}


def aggregate_axis(cells: Sequence[MatrixCellResult], axis: str) -> List[AxisRollupItem]:
    get_value = AXIS_VALUE_GETTERS[axis]
    grouped: Dict[str, List[MatrixCellResult]] = {}
    for cell in cells:
        grouped.setdefault(get_value(cell), []).append(cell)

    items = []
    for value in sorted(grouped):
        group = grouped[value]
        total = len(group)
        items.append(
            AxisRollupItem(
                axis=axis,
                axis_value=value,
                cell_count=total,
                average_cms=round3(sum(c.score.cms for c in group) / total),
                average_wds=round3(sum(c.score.wds for c in group) / total),
                average_spr=round3(sum(c.score.spr for c in group) / total),
                promotable_cells=len([c for c in group if c.promotable]),
            )
        )
    return items


def summarize_risk_tiers(cells: Sequence[MatrixCellResult]) -> List[RiskTierSummary]:
    summaries = []
    for tier in RISK_TIERS:
        in_tier = [c for c in cells if c.axes.scenario_slice.risk_tier == tier]
        summaries.append(
            RiskTierSummary(
                risk_tier=tier,
                cell_count=len(in_tier),
                promotable_cells=len([c for c in in_tier if c.promotable]),
                deterministic_regressions=len([c for c in in_tier if c.score.deterministic_regression]),
            )
        )
    return summaries


def build_matrix_report(
    matrix_id: str,
    run_label: str,
    cells: Sequence[MatrixCellResult],
    clock: Optional[Clock] = None,
) -> MatrixReport:
    rollups: List[AxisRollupItem] = []
    for axis in AXIS_VALUE_GETTERS:
        rollups.extend(aggregate_axis(cells, axis))

    return MatrixReport(
        matrix_id=matrix_id,
        generated_at=utc_now_iso(clock),
        run_label=run_label,
        total_cells=len(cells),
        promotable_cells=len([c for c in cells if c.promotable]),
        deterministic_regressions=len([c for c in cells if c.score.deterministic_regression]),
        cells=list(cells),
        axis_rollups=rollups,
        risk_tier_summary=summarize_risk_tiers(cells),
    )
