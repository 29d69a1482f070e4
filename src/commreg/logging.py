"""
Logging for the communication regression workflow.

All modules log through the ``commreg`` logger, which writes to the
terminal with rich formatting and, when configured, to a plain-text
log file. Workflow stages are wrapped in :func:`log_context` so that
every run log shows where each stage starts, how long it took, and
which stage a fatal error came from.
"""

import logging
import time
from pathlib import Path
from typing import Optional
from contextlib import contextmanager

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

# Shared console so log lines and CLI tables interleave cleanly
console = Console(stderr=True)

_loggers: dict[str, logging.Logger] = {}

FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    name: str = "commreg",
) -> logging.Logger:
    """
    Configure the workflow logger.

    Repeated calls reuse the existing logger: the level is updated and a
    file handler is attached when ``log_file`` is new.

    Args:
        level: Logging level name
        log_file: Optional path of a plain-text log file
        name: Logger name

    Returns:
        Configured logger
    """
    logger = _loggers.get(name)
    if logger is None:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = False

        handler = RichHandler(
            console=console,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        _loggers[name] = logger

    logger.setLevel(_level(level))
    if log_file:
        _add_file_handler(logger, Path(log_file))
    return logger


def _add_file_handler(logger: logging.Logger, log_file: Path) -> None:
    target = log_file.resolve()
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename).resolve() == target:
            return

    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(file_handler)


def get_logger(name: str = "commreg") -> logging.Logger:
    """Get the named logger, configuring it with defaults on first use."""
    if name not in _loggers:
        return setup_logging(name=name)
    return _loggers[name]


@contextmanager
def log_context(context: str, logger: Optional[logging.Logger] = None):
    """
    Log the start, duration and outcome of a workflow stage.

    Exceptions are logged and re-raised unchanged.
    """
    if logger is None:
        logger = get_logger()

    start = time.monotonic()
    logger.info(f"[bold blue]>>> {escape(context)}[/bold blue]", extra={"markup": True})
    try:
        yield logger
    except Exception as e:
        logger.error(
            f"[bold red]!!! {escape(context)} failed: {escape(str(e))}[/bold red]",
            extra={"markup": True},
        )
        raise
    else:
        elapsed = time.monotonic() - start
        logger.info(
            f"[bold green]<<< {escape(context)} complete ({elapsed:.2f}s)[/bold green]",
            extra={"markup": True},
        )


class ProgressLogger:
    """Debug-level progress for loops over modes or replicates."""

    def __init__(self, total: int, description: str, logger: Optional[logging.Logger] = None):
        self.total = total
        self.description = description
        self.logger = logger or get_logger()
        self.current = 0

    def update(self, n: int = 1, message: str = "") -> None:
        self.current += n
        suffix = f": {message}" if message else ""
        self.logger.debug(f"{self.description} [{self.current}/{self.total}]{suffix}")

    def done(self) -> None:
        self.logger.info(f"{self.description}: {self.current}/{self.total} done")
