"""Test cases for custom error classes."""

import pytest

from ednafit.fitting.errors import (
    CLIError,
    ConfigurationError,
    ConvergenceError,
    EdnaFitError,
    FileFormatError,
    FitError,
    InsufficientDataError,
    InvalidDataError,
    MeshError,
)


def test_base_class() -> None:
    """Test that EdnaFitError is the base class."""
    error = EdnaFitError("Base error")
    assert isinstance(error, Exception)
    assert str(error) == "Base error"


@pytest.mark.parametrize(
    ("cls", "parent"),
    [
        (FitError, EdnaFitError),
        (InsufficientDataError, FitError),
        (InvalidDataError, FitError),
        (ConfigurationError, EdnaFitError),
        (MeshError, ConfigurationError),
        (CLIError, EdnaFitError),
    ],
)
def test_hierarchy(cls: type[Exception], parent: type[Exception]) -> None:
    """Fit, configuration and CLI errors are separate branches."""
    assert issubclass(cls, parent)


def test_configuration_is_not_fit_error() -> None:
    """A bad setup is never reported as a failed fit."""
    assert not issubclass(ConfigurationError, FitError)
    assert not issubclass(ConvergenceError, ConfigurationError)


def test_convergence_error() -> None:
    """Optimizer diagnostics are kept as attributes."""
    error = ConvergenceError("ABNORMAL_TERMINATION", 0.25, 17)
    assert isinstance(error, FitError)
    assert error.max_gradient == 0.25
    assert error.n_iter == 17
    assert "17 iterations" in str(error)
    assert "ABNORMAL_TERMINATION" in str(error)


def test_configuration_error() -> None:
    """Test ConfigurationError with and without suggestions."""
    error = ConfigurationError("Mesh is missing")
    assert "Configuration error: Mesh is missing" in str(error)
    assert error.suggestions == []
    assert "Suggestions" not in str(error)

    error = ConfigurationError(
        "Mesh is missing", ["Build one with make_mesh", "Turn the field off"]
    )
    assert "Suggestions:" in str(error)
    assert "  - Build one with make_mesh" in str(error)
    assert "  - Turn the field off" in str(error)


def test_file_format_error() -> None:
    """Test FileFormatError with various parameters."""
    error = FileFormatError(
        filepath="/path/to/obs.csv",
        expected_format="CSV with columns: plate, X, Y, ct",
    )
    assert isinstance(error, CLIError)
    assert "Invalid file format" in str(error)
    assert "/path/to/obs.csv" in str(error)
    assert "Details" not in str(error)

    error = FileFormatError(
        filepath="/path/to/obs.csv",
        expected_format="CSV",
        details="Missing header row",
    )
    assert "Details: Missing header row" in str(error)
    assert error.filepath == "/path/to/obs.csv"


def test_errors_can_be_caught_as_base() -> None:
    """All errors can be caught as EdnaFitError."""
    errors = [
        ConvergenceError("msg", 1.0, 1),
        InsufficientDataError("too few"),
        ConfigurationError("bad"),
        MeshError("no knots"),
        FileFormatError("f.csv", "CSV"),
    ]
    for error in errors:
        with pytest.raises(EdnaFitError):
            raise error
