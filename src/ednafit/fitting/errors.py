"""Error classes for ednafit.

Fit failures, configuration problems and CLI input problems are kept in
separate branches so callers can tell a model that did not converge apart
from a model that was never set up correctly.
"""


class EdnaFitError(Exception):
    """Base class for all ednafit errors."""


class FitError(EdnaFitError):
    """Base class for fitting errors."""


class InsufficientDataError(FitError):
    """Raised to prevent fitting failure for too few data points."""


class ConvergenceError(FitError):
    """Raised when the optimizer stops away from a stationary point.

    Parameters
    ----------
    message : str
        Optimizer message.
    max_gradient : float
        Largest absolute gradient component at the returned point.
    n_iter : int
        Number of optimizer iterations.
    """

    def __init__(self, message: str, max_gradient: float, n_iter: int) -> None:
        self.max_gradient = max_gradient
        self.n_iter = n_iter
        super().__init__(
            f"Fit did not converge after {n_iter} iterations "
            f"(max |gradient| = {max_gradient:.3g}): {message}"
        )


class InvalidDataError(FitError):
    """Raised when input data is invalid."""


class ConfigurationError(EdnaFitError):
    """Raised when tables, mesh or options cannot define a model.

    Parameters
    ----------
    message : str
        Description of the problem.
    suggestions : list[str] | None
        List of suggestions to fix the error.
    """

    def __init__(self, message: str, suggestions: list[str] | None = None) -> None:
        self.suggestions = suggestions or []
        full_message = f"Configuration error: {message}"
        if self.suggestions:
            full_message += "\n\nSuggestions:"
            for suggestion in self.suggestions:
                full_message += f"\n  - {suggestion}"
        super().__init__(full_message)


class MeshError(ConfigurationError):
    """Raised when a mesh cannot be built or is malformed."""


# CLI-specific errors
class CLIError(EdnaFitError):
    """Base class for CLI-related errors."""


class FileFormatError(CLIError):
    """Raised when an input file has invalid format.

    Parameters
    ----------
    filepath : str
        Path to the problematic file.
    expected_format : str
        Description of expected file format.
    details : str, optional
        Additional details about the error.
    """

    def __init__(self, filepath: str, expected_format: str, details: str = "") -> None:
        self.filepath = filepath
        self.expected_format = expected_format
        message = f"Invalid file format: {filepath}\nExpected: {expected_format}"
        if details:
            message += f"\nDetails: {details}"
        super().__init__(message)
