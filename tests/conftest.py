"""Shared fixtures for gridcalc tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from gridcalc.store import InMemoryCellStore


@pytest.fixture(autouse=True)
def _detach_event_sink():
    """Commands and the server attach a process-wide sink; drop it after each test."""
    yield
    from gridcalc.logging import set_project_dir

    set_project_dir(None)


@pytest.fixture
def store() -> InMemoryCellStore:
    return InMemoryCellStore()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    from gridcalc.project import scaffold_project

    return scaffold_project(tmp_path / "proj")
