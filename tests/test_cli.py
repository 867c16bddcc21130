"""Tests for the gridcalc command-line interface."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from gridcalc.cli import main


@pytest.fixture(autouse=True)
def _no_database_override(monkeypatch):
    monkeypatch.delenv("GRIDCALC_DATABASE", raising=False)


def run(*args: str):
    return CliRunner().invoke(main, list(args))


class TestInit:
    def test_init(self, tmp_path: Path) -> None:
        result = run("init", str(tmp_path / "p"))
        assert result.exit_code == 0, result.output
        assert "Created project" in result.output
        assert (tmp_path / "p" / "gridcalc.yaml").exists()

    def test_init_existing(self, project_dir: Path) -> None:
        result = run("init", str(project_dir))
        assert result.exit_code != 0
        assert "already exists" in result.output

    def test_version(self) -> None:
        from gridcalc import __version__

        result = run("--version")
        assert __version__ in result.output


class TestCells:
    def test_set_and_get(self, project_dir: Path) -> None:
        result = run("set", "s1", "A1", "5", "--project", str(project_dir))
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "A1\t5"

        result = run("set", "s1", "B1", "=A1*3", "--project", str(project_dir))
        assert result.output.strip() == "B1\t15"

        result = run("get", "s1", "b1", "--project", str(project_dir))
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == {"content": "15", "formula": "=A1*3", "hyperlink": None}

    def test_set_shows_dependents(self, project_dir: Path) -> None:
        run("set", "s1", "B1", "=A1+1", "--project", str(project_dir))
        result = run("set", "s1", "A1", "9", "--project", str(project_dir))
        assert result.output.splitlines() == ["A1\t9", "B1\t10"]

    def test_set_json(self, project_dir: Path) -> None:
        result = run("set", "s1", "A1", "=2^3", "--json", "--project", str(project_dir))
        data = json.loads(result.output)
        assert data["sheet_id"] == "s1"
        assert data["results"][0]["content"] == "8"

    def test_set_failure_exit_code(self, project_dir: Path) -> None:
        result = run("set", "s1", "A1", "=A1", "--project", str(project_dir))
        assert result.exit_code == 2
        assert "#CIRC!" in result.output

    def test_set_invalid_address(self, project_dir: Path) -> None:
        result = run("set", "s1", "1A", "5", "--project", str(project_dir))
        assert result.exit_code == 1

    def test_get_missing(self, project_dir: Path) -> None:
        result = run("get", "s1", "Z9", "--project", str(project_dir))
        assert result.exit_code == 1
        assert "No cell at Z9" in result.output

    def test_cells(self, project_dir: Path) -> None:
        assert run("cells", "s1", "--project", str(project_dir)).output.strip() == "No cells."
        run("set", "s1", "B1", "=A1", "--project", str(project_dir))
        run("set", "s1", "A1", "4", "--project", str(project_dir))
        result = run("cells", "s1", "--project", str(project_dir))
        assert result.output.splitlines() == ["A1\t4", "B1\t4\t=A1"]

    def test_dependents(self, project_dir: Path) -> None:
        assert "No dependents." in run("dependents", "s1", "A1", "--project", str(project_dir)).output
        run("set", "s1", "B1", "=A1", "--project", str(project_dir))
        run("set", "s1", "C1", "=B1", "--project", str(project_dir))
        direct = run("dependents", "s1", "A1", "--project", str(project_dir))
        assert direct.output.splitlines() == ["B1"]
        closure = run("dependents", "s1", "A1", "--transitive", "--project", str(project_dir))
        assert closure.output.splitlines() == ["B1", "C1"]

    def test_rebuild(self, project_dir: Path) -> None:
        run("set", "s1", "B1", "=A1", "--project", str(project_dir))
        run("set", "s2", "B1", "=A1*2", "--project", str(project_dir))
        result = run("rebuild", "--project", str(project_dir))
        assert result.exit_code == 0, result.output
        assert "from 2 formulas" in result.output


class TestEval:
    def test_eval(self, project_dir: Path) -> None:
        run("set", "Sheet1", "A1", "5", "--project", str(project_dir))
        result = run("eval", "=A1 + 10", "--project", str(project_dir))
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "15"

    def test_eval_other_sheet(self, project_dir: Path) -> None:
        run("set", "s1", "A1", "0.5", "--project", str(project_dir))
        result = run("eval", "A1*3", "--sheet", "s1", "--project", str(project_dir))
        assert result.output.strip() == "1.5"

    def test_eval_error(self, project_dir: Path) -> None:
        result = run("eval", "=1/0", "--project", str(project_dir))
        assert result.exit_code == 2
        assert "#VALUE!" in result.output


class TestEventCommands:
    def test_events(self, project_dir: Path) -> None:
        assert "No events found." in run("events", "--project", str(project_dir)).output
        run("set", "s1", "A1", "5", "--project", str(project_dir))
        run("set", "s1", "B1", "=B1", "--project", str(project_dir))

        result = run("events", "--project", str(project_dir))
        assert "cell_written" in result.output
        assert "circular_reference" in result.output

        warnings = run("events", "--level", "warning", "--project", str(project_dir))
        assert "cell_written" not in warnings.output
        assert "(circular_reference)" in warnings.output

    def test_sheet_log(self, project_dir: Path) -> None:
        run("set", "s1", "A1", "5", "--project", str(project_dir))
        result = run("sheet-log", "s1", "--project", str(project_dir))
        lines = result.output.splitlines()
        assert "cell_written" in lines[0]
        assert "recalc_completed" in lines[1]
        assert "No events found" in run("sheet-log", "s9", "--project", str(project_dir)).output
