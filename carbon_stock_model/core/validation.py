"""
Accuracy assessment of carbon estimates.

Author: Diego Bengochea
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
from sklearn.metrics import r2_score

from shared_utils import get_logger

from .exceptions import NoOverlap
from .raster import Raster
from .regression import CarbonModel
from .sampling import Dataset


@dataclass(frozen=True)
class ValidationResult:
    """Accuracy summary of predictions against reference values."""

    rmse: float
    n_samples: int
    bias: float
    r2: Optional[float] = None


def rmse(predicted: np.ndarray, reference: np.ndarray) -> float:
    """Root mean squared error between two equally sized vectors."""
    predicted = np.asarray(predicted, dtype=np.float64)
    reference = np.asarray(reference, dtype=np.float64)
    if predicted.shape != reference.shape:
        raise ValueError(f"Shape mismatch: {predicted.shape} vs {reference.shape}")
    if predicted.size == 0:
        raise NoOverlap("No pairs to compare")
    return float(np.sqrt(np.mean((predicted - reference) ** 2)))


def summarize(predicted: np.ndarray, reference: np.ndarray) -> ValidationResult:
    """RMSE, mean bias (prediction minus reference) and R² when defined."""
    error = rmse(predicted, reference)
    bias = float(np.mean(np.asarray(predicted) - np.asarray(reference)))

    r2 = None
    if len(reference) >= 2 and np.var(reference) > 0:
        r2 = float(r2_score(reference, predicted))

    return ValidationResult(rmse=error, n_samples=int(len(reference)), bias=bias, r2=r2)


class Validator:
    """Compare model estimates to reference carbon density."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = get_logger('validation')

        prediction = self.config.get('prediction', {})
        self.clamp_negative = prediction.get('clamp_negative', True)

    def validate_dataset(self, model: CarbonModel, test: Dataset) -> ValidationResult:
        """
        Held-out accuracy of ``model`` on ``test``.

        Raises:
            NoOverlap: If the test set is empty
        """
        if len(test) == 0:
            raise NoOverlap("Test set is empty", context={'n_samples': 0})

        predicted = model.predict_matrix(test.feature_matrix())
        if self.clamp_negative:
            predicted = np.maximum(predicted, 0.0)

        result = summarize(predicted, test.labels())
        self.logger.info(f"Test RMSE: {result.rmse:.4f} over {result.n_samples} samples (bias {result.bias:.4f})")
        return result

    def validate_rasters(self, prediction: Raster, reference: Raster) -> ValidationResult:
        """
        Accuracy over every pixel valid in both single-band rasters.

        Raises:
            NoOverlap: If no pixel is valid in both
        """
        if not prediction.same_grid(reference):
            raise ValueError("Prediction and reference rasters must share grid geometry")

        pred_values, pred_valid = prediction.band_values(prediction.bands[0])
        ref_values, ref_valid = reference.band_values(reference.bands[0])
        overlap = pred_valid & ref_valid

        if not overlap.any():
            raise NoOverlap(
                "Prediction and reference share no valid pixel",
                context={'prediction_valid': int(pred_valid.sum()), 'reference_valid': int(ref_valid.sum())},
            )

        result = summarize(pred_values[overlap], ref_values[overlap])
        self.logger.info(f"Raster RMSE: {result.rmse:.4f} over {result.n_samples} pixels")
        return result
