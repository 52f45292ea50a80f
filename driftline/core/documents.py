"""Loading of JSON/YAML configuration documents.

Scenario suites, comparator profiles and matrix contracts may be written in
either format; the file suffix decides the parser.
"""

from __future__ import annotations

import json
import os
from typing import Any

import yaml

from .errors import DocumentLoadError

YAML_SUFFIXES = (".yaml", ".yml")


def load_document(path: str) -> Any:
    """Parse a JSON or YAML file into plain Python values.

    Raises:
        FileNotFoundError: If the file does not exist.
        DocumentLoadError: If the file cannot be parsed.
    """
    absolute = os.path.abspath(path)
    with open(absolute, "r", encoding="utf-8") as f:
        if absolute.lower().endswith(YAML_SUFFIXES):
            try:
                return yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise DocumentLoadError(f"Error parsing YAML file: {absolute}", absolute) from exc
        try:
            return json.load(f)
        except json.JSONDecodeError as exc:
            raise DocumentLoadError(
                f"Error parsing JSON file: {absolute} (line {exc.lineno})", absolute
            ) from exc
