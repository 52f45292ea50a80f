"""Matrix runs: contract, per-cell execution and scoring."""

from .contract import (
    MatrixCellDefinition,
    MatrixRunContract,
    expand_matrix_cells,
    load_matrix_run_contract,
    parse_matrix_run_contract,
    select_scenario_ids_for_slice,
)
from .runner import MatrixRunOutput, run_replay_matrix
from .scoring import MatrixCellScore, MatrixReport, build_matrix_report, score_matrix_cell

__all__ = [
    "MatrixRunContract",
    "MatrixCellDefinition",
    "parse_matrix_run_contract",
    "load_matrix_run_contract",
    "select_scenario_ids_for_slice",
    "expand_matrix_cells",
    "MatrixCellScore",
    "MatrixReport",
    "score_matrix_cell",
    "build_matrix_report",
    "MatrixRunOutput",
    "run_replay_matrix",
]
