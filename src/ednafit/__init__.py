"""ednafit: Simulate eDNA standard curves and fit calibrated spatial models."""

import logging
from importlib.metadata import PackageNotFoundError, version
from logging.handlers import RotatingFileHandler

try:
    __version__ = version("ednafit")
except PackageNotFoundError:
    __version__ = "unknown"

__out_dir__ = f"ednafit-{__version__}"


def console_level(verbose: int = 0, quiet: bool = False) -> int:
    """Console logging level for the CLI verbosity flags.

    WARNING by default, INFO with one `-v`, DEBUG with two or more and ERROR
    when `quiet` is set (which wins over `verbose`).
    """
    if quiet:
        return logging.ERROR
    level_mapping = {0: logging.WARNING, 1: logging.INFO}
    return level_mapping.get(max(verbose, 0), logging.DEBUG)


def configure_logging(
    verbose: int = 0, quiet: bool = False, log_file: str = "ednafit.log"
) -> None:
    """Centralized logging configuration for both library and CLI.

    Parameters
    ----------
    verbose : int
        Verbosity level (0=WARNING, 1=INFO, 2 or more=DEBUG). Default 0.
    quiet : bool
        Silence terminal output; show only ERROR messages.
    log_file : str
        Path to log file. Default "ednafit.log". Empty string disables it.
    """
    log_level = console_level(verbose, quiet)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all messages, filter via handlers

    def has_handler_of_type(
        logger: logging.Logger, handler_type: type, match_file: str | None = None
    ) -> bool:
        """Check if the logger has a handler of a given type (optionally matching a filename)."""
        for h in logger.handlers:
            if isinstance(h, handler_type) and (
                match_file is None or getattr(h, "baseFilename", None) == match_file
            ):
                return True
        return False

    # File handler always at DEBUG level to capture everything
    if log_file and not has_handler_of_type(
        root_logger, RotatingFileHandler, match_file=log_file
    ):
        file_handler = RotatingFileHandler(log_file, maxBytes=10**6, backupCount=3)
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)-8s] %(name)-20s : %(message)s",
            datefmt="%Y-%m-%d %H:%M",
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_formatter = logging.Formatter(fmt="[%(levelname)-8s]  %(message)s")
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    logger_dict = logging.Logger.manager.loggerDict
    for name in logger_dict:
        if name.startswith("ednafit."):
            logging.getLogger(name).propagate = True
    logging.captureWarnings(True)
