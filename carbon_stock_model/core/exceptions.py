"""
Error taxonomy for the carbon stock estimation pipeline.

Every stage fails fast with one of these typed errors. The pipeline tags the
raised error with the stage that produced it and the inputs it was given
before re-raising, so callers can report exactly where a run stopped.

Author: Diego Bengochea
"""

from typing import Any, Dict, Optional


class CarbonStockError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stage: Optional[str] = None
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage:
            return f"[{self.stage}] {message}"
        return message


class NoRegionFound(CarbonStockError):
    """No boundary polygon contains the requested point."""


class NoScenesAvailable(CarbonStockError):
    """No scene matches region, date range and cloud threshold."""


class RetrievalTimeout(CarbonStockError, TimeoutError):
    """An external retrieval did not complete within its timeout."""


class RetrievalCancelled(CarbonStockError):
    """The caller cancelled the run during retrieval."""


class InsufficientData(CarbonStockError):
    """Too few valid samples or training rows."""


class DegenerateFit(CarbonStockError):
    """The regression system is singular or produced non-finite coefficients."""


class NoOverlap(CarbonStockError):
    """Prediction and reference share no valid location."""


class SchemaMismatch(CarbonStockError, ValueError):
    """A raster or dataset does not follow the model's feature schema."""


class ExportError(CarbonStockError, IOError):
    """Writing a raster through the export gateway failed."""
