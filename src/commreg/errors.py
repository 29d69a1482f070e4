"""
Exception hierarchy for the communication regression workflow.

Every error can carry the workflow stage and the input (file, mode,
covariate) that triggered it so that fatal failures are reported with
context instead of a bare traceback.
"""

from typing import Optional


class CommRegError(Exception):
    """Base class for all commreg errors."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        source: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.source = source

    def with_context(
        self,
        stage: Optional[str] = None,
        source: Optional[str] = None,
    ) -> "CommRegError":
        """Fill in stage/source if not already set and return self."""
        if self.stage is None:
            self.stage = stage
        if self.source is None:
            self.source = source
        return self

    def __str__(self) -> str:
        text = self.message
        if self.stage:
            text = f"[{self.stage}] {text}"
        if self.source:
            text = f"{text} (source: {self.source})"
        return text


class ShapeError(CommRegError, ValueError):
    """Malformed tensor/covariate dimensions or an out-of-range mode index."""


class ConvergenceError(CommRegError, RuntimeError):
    """The tensor regression fit did not converge (or ran out of time)."""


class InputDataError(CommRegError, ValueError):
    """An input file is missing, unreadable, or inconsistent."""


class InsufficientReplicatesError(CommRegError, RuntimeError):
    """Too few bootstrap replicates succeeded to trust the p-values."""

    def __init__(
        self,
        n_success: int,
        n_required: int,
        n_boot: int,
        stage: Optional[str] = "bootstrap",
        source: Optional[str] = None,
    ):
        message = (
            f"Only {n_success}/{n_boot} bootstrap replicates succeeded "
            f"(at least {n_required} required)"
        )
        super().__init__(message, stage=stage, source=source)
        self.n_success = n_success
        self.n_required = n_required
        self.n_boot = n_boot
