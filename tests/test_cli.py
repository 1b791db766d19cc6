"""Test ``ednafit`` cli."""

from __future__ import annotations

from pathlib import Path

import pandas as pd
import pytest
from click.testing import CliRunner

from ednafit.__main__ import ednafit


@pytest.fixture
def runner() -> CliRunner:
    """Fixture for invoking command-line interfaces."""
    return CliRunner()


@pytest.fixture
def simulated(runner: CliRunner, tmp_path: Path) -> Path:
    """A small synthetic survey written by the simulate command."""
    out = tmp_path / "sim"
    result = runner.invoke(
        ednafit,
        ["-o", str(out), "simulate", "--n-plates", "4", "--n-locations", "80",
         "--ct-sd", "0.3", "--no-png"],
    )  # fmt: skip
    assert result.exit_code == 0, result.output
    return out


def test_simulate(simulated: Path) -> None:
    """Standards, observations and plate coefficients are written."""
    for name in ("standards.csv", "observations.csv", "plates.csv"):
        assert (simulated / name).exists()
    assert not (simulated / "standard_curves.png").exists()
    obs = pd.read_csv(simulated / "observations.csv")
    assert len(obs) == 80
    assert {"plate", "X", "Y", "ct", "detected"} <= set(obs.columns)
    plates = pd.read_csv(simulated / "plates.csv", index_col=0)
    assert len(plates) == 4


def test_fit(runner: CliRunner, simulated: Path, tmp_path: Path) -> None:
    """A calibrated fit writes its tables and prints the estimates."""
    out = tmp_path / "fit"
    result = runner.invoke(
        ednafit,
        ["-o", str(out), "fit", str(simulated / "observations.csv"),
         str(simulated / "standards.csv"), "--n-knots", "10"],
    )  # fmt: skip
    assert result.exit_code == 0, result.output
    assert "intercept" in result.output
    for name in ("tidy.csv", "random_effects.csv", "predictions.csv"):
        assert (out / name).exists()
    tidy = pd.read_csv(out / "tidy.csv")
    assert set(tidy["effects"]) == {"fixed", "ran_pars"}
    assert (out / "ednafit_fit.log").exists()


def test_residuals(runner: CliRunner, simulated: Path, tmp_path: Path) -> None:
    """Quantile residuals and their checks."""
    out = tmp_path / "res"
    result = runner.invoke(
        ednafit,
        ["-o", str(out), "residuals", str(simulated / "observations.csv"),
         str(simulated / "standards.csv"), "--n-knots", "10",
         "--mode", "quantile", "--seed", "1", "--no-png"],
    )  # fmt: skip
    assert result.exit_code == 0, result.output
    assert "80 residuals" in result.output
    assert "normality_ok" in result.output
    df = pd.read_csv(out / "residuals.csv")
    assert "residual" in df.columns
    assert (out / "residual_statistics.csv").exists()


def test_simulation_residuals(runner: CliRunner, simulated: Path, tmp_path: Path) -> None:
    """Simulation modes also report the zero-proportion check."""
    out = tmp_path / "res"
    result = runner.invoke(
        ednafit,
        ["-o", str(out), "residuals", str(simulated / "observations.csv"),
         str(simulated / "standards.csv"), "--n-knots", "10",
         "--mode", "simulation", "--n-sims", "20", "--seed", "1"],
    )  # fmt: skip
    assert result.exit_code == 0, result.output
    assert "zero proportion" in result.output
    assert (out / "qq.png").exists()
    assert (out / "zero_proportion.png").exists()


def test_bad_table(runner: CliRunner, tmp_path: Path) -> None:
    """Missing response column is reported as a CLI error."""
    bad = tmp_path / "bad.csv"
    bad.write_text("a,b\n1,2\n")
    result = runner.invoke(ednafit, ["-o", str(tmp_path), "fit", str(bad)])
    assert result.exit_code != 0
    assert "Invalid file format" in result.output


def test_missing_mesh_columns(runner: CliRunner, tmp_path: Path) -> None:
    """Configuration problems surface as CLI errors, not tracebacks."""
    obs = tmp_path / "obs.csv"
    obs.write_text("ct\n30.0\n31.0\n32.0\n")
    result = runner.invoke(
        ednafit, ["-o", str(tmp_path), "fit", str(obs), "--family", "gaussian"]
    )
    assert result.exit_code != 0
    assert "Error" in result.output


def test_too_many_plates(runner: CliRunner, tmp_path: Path) -> None:
    """Impossible plate counts are reported, not looped on."""
    result = runner.invoke(
        ednafit, ["-o", str(tmp_path), "simulate", "--n-plates", "300000", "--no-png"]
    )
    assert result.exit_code != 0
    assert "unique plate ids" in result.output
