"""
Error taxonomy for the quality-triage and differential-expression engine.

Fatal errors (ConfigurationError, InputShapeError) always surface to the caller
and carry the pipeline stage that raised them. Per-gene convergence problems are
reported as a single ConvergenceWarning per backend and contrast.
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional


class AnalysisError(Exception):
    """Base class for fatal analysis errors."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message: str = message
        self.stage: Optional[str] = stage
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigurationError(AnalysisError):
    """Rank-deficient design, zero-replicate group, invalid contrast or threshold."""


class InputShapeError(AnalysisError):
    """Mismatched identifiers, non-integer or negative counts."""


class ConvergenceWarning(UserWarning):
    """Some genes failed to converge or produced undefined statistics."""


@contextmanager
def stage(name: str) -> Iterator[None]:
    """
    Stamp the stage name onto any AnalysisError raised inside the block.

    Errors that already name a more specific stage keep it.
    """
    try:
        yield
    except AnalysisError as e:
        if e.stage is None:
            e.stage = name
        raise
