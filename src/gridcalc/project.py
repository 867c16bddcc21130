"""Project-level configuration and scaffolding."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


DEFAULT_CONFIG = {
    "database": "gridcalc.db",
    "database_env": "GRIDCALC_DATABASE",
    "max_closure_size": 10_000,
    "max_recalc_seconds": 5.0,
    "max_resolution_depth": 1000,
    "max_range_cells": 10_000,
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}


def _flatten_limits_block(user_config: dict[str, Any]) -> dict[str, Any]:
    """Flatten a nested ``limits:`` block into flat config keys.

    Supports::

        limits:
          closure_size: 5000
          recalc_seconds: 2.5
          resolution_depth: 100
          range_cells: 2000

    Maps to ``max_closure_size``, ``max_recalc_seconds``,
    ``max_resolution_depth`` and ``max_range_cells``.  Flat keys given at
    the top level win over the nested block.
    """
    limits = user_config.pop("limits", None)
    if not isinstance(limits, dict):
        return user_config

    for short_key, value in limits.items():
        flat_key = short_key if short_key.startswith("max_") else f"max_{short_key}"
        if flat_key in DEFAULT_CONFIG:
            user_config.setdefault(flat_key, value)
    return user_config


DEFAULT_GRIDCALC_CONFIG = """\
# gridcalc project configuration
database: gridcalc.db
# Environment variable that, when set, overrides the database path.
database_env: GRIDCALC_DATABASE

limits:
  closure_size: 10000
  recalc_seconds: 5.0
  resolution_depth: 1000
  range_cells: 10000

# logging_fsync: false
# logging_tail_bytes: 2097152
"""


def load_project_config(project_dir: Path) -> dict[str, Any]:
    """Load project configuration from ``gridcalc.yaml``, with defaults.

    Supports both flat limit keys (``max_closure_size``) and a nested
    ``limits:`` block.  The nested block is flattened before merging.

    Args:
        project_dir: Root of the gridcalc project.

    Returns:
        Merged configuration dict.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = Path(project_dir) / "gridcalc.yaml"
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(user_config, dict):
            raise ValueError(f"{config_path} must contain a mapping")
        user_config = _flatten_limits_block(user_config)
        config.update(user_config)
    return config


def database_path(project_dir: Path, config: dict[str, Any] | None = None) -> Path:
    """Resolve the SQLite database path for a project.

    The environment variable named by ``database_env`` wins over the
    ``database`` key; relative paths are taken from *project_dir*.
    """
    if config is None:
        config = load_project_config(project_dir)
    env_name = config.get("database_env")
    raw = os.environ.get(env_name) if env_name else None
    path = Path(raw or config.get("database") or DEFAULT_CONFIG["database"])
    if not path.is_absolute():
        path = Path(project_dir) / path
    return path


def scaffold_project(target_dir: Path) -> Path:
    """Create a new gridcalc project directory.

    Args:
        target_dir: Directory to create (must not already contain gridcalc.yaml).

    Returns:
        Path to the created project directory.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    if (target_dir / "gridcalc.yaml").exists():
        raise FileExistsError(f"gridcalc.yaml already exists in {target_dir}")

    (target_dir / "gridcalc.yaml").write_text(DEFAULT_GRIDCALC_CONFIG)
    (target_dir / "logs").mkdir(exist_ok=True)
    (target_dir / "logs" / "sheets").mkdir(exist_ok=True)
    return target_dir
