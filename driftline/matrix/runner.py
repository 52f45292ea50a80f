"""
Matrix runner: execute the replay pipeline once per expanded matrix cell.

Each cell selects its scenario slice, pins surface and normalization,
captures baseline/candidate through the orchestrator, compares, optionally
retries once, evaluates the gate and scores the result. Cells run one after
another in expansion order.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from ..core.capture import ScenarioRunner
from ..core.comparator import compare_replay_runs
from ..core.determinism import Clock, now_ms
from ..core.errors import ContractValidationError, FingerprintStabilityError
from ..core.gate import evaluate_replay_gate_with_retry, is_blocking
from ..core.orchestrator import ReplayOrchestrator
from ..core.profile import ComparatorProfile
from ..core.report import write_matrix_report
from ..core.scenario import NormalizationConfig, RuntimeConfig, Scenario
from .contract import MatrixCellDefinition, MatrixRunContract, expand_matrix_cells, select_scenario_ids_for_slice
from .scoring import (
    MatrixCellResult,
    MatrixReport,
    build_matrix_report,
    evaluate_matrix_promotable,
    score_matrix_cell,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatrixRunOutput:
    report: MatrixReport
    output_file: str
    markdown_file: str


def normalize_scenario_for_cell(
    scenario: Scenario, cell: MatrixCellDefinition, require_normalization: bool
) -> Scenario:
    """Pin the cell's surface and normalization onto a scenario.

    The cell config overrides the scenario's own flags. When normalization is
    required, timestamps, paths and text stripping are forced on; otherwise
    each of those three is on if either side enables it.
    """
    own = scenario.normalization or NormalizationConfig()
    cell_config = cell.axes.normalization_profile.config

    def forced(field_name: str) -> bool:
        if require_normalization:
            return True
        return bool(getattr(own, field_name)) or bool(getattr(cell_config, field_name))

    normalization = NormalizationConfig(
        mask_ids=cell_config.mask_ids if cell_config.mask_ids is not None else own.mask_ids,
        canonicalize_timestamps=forced("canonicalize_timestamps"),
        canonicalize_paths=forced("canonicalize_paths"),
        strip_nondeterministic_text=forced("strip_nondeterministic_text"),
    )
    metadata = dict(scenario.metadata or {})
    metadata["matrix"] = cell.axes.axis_ids()

    return dataclasses.replace(
        scenario,
        runtime=RuntimeConfig(mode=scenario.runtime.mode, terminal_surface=cell.axes.execution_surface),
        normalization=normalization,
        metadata=metadata,
    )


def deterministic_fingerprint(report: MatrixReport) -> str:
    tokens = sorted(
        f"{cell.cell_id}|{cell.gate.classification.value}|{cell.comparison.summary.high_severity_drifts}"
        f"|{cell.comparison.summary.medium_severity_drifts}|{cell.comparison.summary.low_severity_drifts}"
        for cell in report.cells
    )
    return "||".join(tokens)


def run_replay_matrix(
    output_root: str,
    run_label: str,
    contract: MatrixRunContract,
    scenarios: Sequence[Scenario],
    comparator_profiles: Mapping[str, ComparatorProfile],
    workspace_path: Optional[str] = None,
    runner: Optional[ScenarioRunner] = None,
    clock: Optional[Clock] = None,
) -> MatrixRunOutput:
    """Run every cell of a matrix contract and write the matrix report.

    Raises:
        ContractValidationError: If a cell names a comparator profile that
            is not in comparator_profiles.
        FingerprintStabilityError: If the report fingerprint is not stable.
    """
    controls = contract.determinism
    orchestrator = ReplayOrchestrator(
        output_root,
        runner=runner,
        determinism=controls.to_determinism_config(),
        clock=clock,
    )
    cells = expand_matrix_cells(contract)
    logger.info("Matrix %s expanded to %d cells", contract.matrix_id, len(cells))

    results = []
    for cell in cells:
        profile_id = cell.axes.comparator_profile.profile_id
        profile = comparator_profiles.get(profile_id)
        if profile is None:
            raise ContractValidationError(f"Comparator profile '{profile_id}' was not loaded.")

        selected_ids = set(select_scenario_ids_for_slice(scenarios, cell.axes.scenario_slice))
        selected = [
            normalize_scenario_for_cell(s, cell, controls.normalization_required)
            for s in scenarios
            if s.scenario_id in selected_ids
        ]
        if not selected:
            logger.info("Skipping cell %s: no scenarios match slice %s", cell.cell_id, cell.axes.scenario_slice.slice_id)
            continue

        logger.info("Running cell %s with %d scenarios", cell.cell_id, len(selected))
        run = orchestrator.run(selected, f"{run_label}-{cell.cell_id}", workspace_path)
        comparison = compare_replay_runs(selected, run.baseline, run.candidate, profile, clock)

        retry_comparison = None
        if controls.retry_once_classification and is_blocking(comparison):
            logger.info("Cell %s is blocking; retrying once", cell.cell_id)
            retry = orchestrator.run(selected, f"{run_label}-{cell.cell_id}-retry", workspace_path)
            retry_comparison = compare_replay_runs(selected, retry.baseline, retry.candidate, profile, clock)

        gate = evaluate_replay_gate_with_retry(comparison, retry_comparison, cell.axes.gate_mode.value, clock)
        provisional = MatrixCellResult(
            cell_id=cell.cell_id,
            scenario_ids=[s.scenario_id for s in selected],
            axes=cell.axes,
            comparison=comparison,
            gate=gate,
            score=score_matrix_cell(comparison, gate),
            promotable=True,
        )
        results.append(
            dataclasses.replace(provisional, promotable=evaluate_matrix_promotable(provisional, contract))
        )

    report = build_matrix_report(contract.matrix_id, run_label, results, clock)

    if controls.fingerprint_stability_check and report.cells:
        first = deterministic_fingerprint(report)
        second = deterministic_fingerprint(report)
        if first != second:
            raise FingerprintStabilityError(
                "Matrix fingerprint stability check failed: report fingerprint is not stable.",
                first,
                second,
            )

    output_dir = os.path.join(output_root, f"{run_label}-matrix-{now_ms(clock)}")
    written = write_matrix_report(output_dir, report, workspace_path)
    logger.info(
        "Matrix %s: %d/%d cells promotable", contract.matrix_id, report.promotable_cells, report.total_cells
    )
    return MatrixRunOutput(report=report, output_file=written.output_file, markdown_file=written.markdown_file)
