"""
Driftline version constants.

This module defines version constants for the Driftline library and the
schemas of the artifacts it reads and writes. Loaders compare against these
to reject documents they do not understand.
"""

# Library version (matches pyproject.toml)
DRIFTLINE_VERSION = "0.4.0"

# Scenario suite schema emitted by the parser
SCENARIO_SCHEMA_VERSION = "1.0"

# Matrix run contracts must declare exactly this schema
MATRIX_CONTRACT_SCHEMA_VERSION = "replay-matrix-run-contract.v1"

# Golden baseline store layout and metadata schema
GOLDEN_STORE_VERSION = "v1"
GOLDEN_METADATA_SCHEMA_VERSION = "replay-golden-baseline-metadata.v1"
