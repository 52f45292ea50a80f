"""
Exception hierarchy for Driftline.

Validation failures are fatal and raised synchronously. Behavioral
differences between traces are never exceptions: they are recorded as drifts.
Guarded promotion refusals are returned as results, not raised.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class DriftlineError(Exception):
    """Base exception for all Driftline failures."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        return self.message


class ScenarioSchemaError(DriftlineError, ValueError):
    """Raised when a scenario suite is malformed."""

    def __init__(
        self,
        message: str,
        scenario_id: Optional[str] = None,
        duplicates: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            context={"scenario_id": scenario_id, "duplicates": duplicates or []},
        )
        self.scenario_id = scenario_id
        self.duplicates = list(duplicates or [])


class ContractValidationError(DriftlineError, ValueError):
    """Raised when a matrix run contract is malformed."""


class ProfileValidationError(DriftlineError, ValueError):
    """Raised when a comparator profile has fields of the wrong type."""


class DocumentLoadError(DriftlineError):
    """Raised when a JSON/YAML document cannot be parsed."""

    def __init__(self, message: str, path: str):
        super().__init__(message, context={"path": path})
        self.path = path


class ArtifactProfileError(DriftlineError, ValueError):
    """Raised when an artifact carries the wrong profile label."""

    def __init__(self, message: str, expected: str, actual: Any):
        super().__init__(message, context={"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


class ArtifactResolutionError(DriftlineError):
    """Raised by the CLI when no artifact file could be resolved."""


class OrchestratorConfigError(DriftlineError, ValueError):
    """Raised when the orchestrator is constructed inconsistently."""


class FingerprintStabilityError(DriftlineError):
    """Raised when a matrix report fingerprint differs between derivations."""

    def __init__(self, message: str, first: str, second: str):
        super().__init__(message, context={"first": first, "second": second})
        self.first = first
        self.second = second


class SelectionError(DriftlineError, ValueError):
    """Raised when scenario filters are invalid or select nothing."""
