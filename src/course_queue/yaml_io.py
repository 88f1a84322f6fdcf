"""Small YAML loading helpers shared by the progress table and the collector."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_yaml_mapping(path: Path, *, what: str = "YAML file") -> dict[str, Any]:
    """Load a YAML file and require a top-level mapping."""

    if not path.exists():
        raise FileNotFoundError(f"{what} not found: {path}")

    raw = yaml.safe_load(path.read_text("utf-8"))
    if raw is None:
        raise ValueError(f"{what} is empty: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML mapping at top level, got {type(raw).__name__}: {path}")
    return raw


def load_yaml_document(path: Path) -> Any:
    """Load any YAML document (mapping, list or scalar); raises yaml.YAMLError."""

    return yaml.safe_load(path.read_text("utf-8"))
