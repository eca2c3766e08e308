"""
Spatial application of a trained carbon model.

Author: Diego Bengochea
"""

from typing import Any, Dict, List, Tuple

import dask
import numpy as np

from shared_utils import get_logger

from .exceptions import SchemaMismatch
from .raster import Raster
from .regression import CarbonModel
from .sampling import Dataset

PREDICTION_BAND = 'estimated_carbon'


def _row_tiles(n_rows: int, tile_rows: int) -> List[Tuple[int, int]]:
    return [(start, min(start + tile_rows, n_rows)) for start in range(0, n_rows, tile_rows)]


def _predict_tile(model: CarbonModel, values: np.ndarray, valid: np.ndarray) -> np.ndarray:
    """Predict a (bands, rows, cols) tile; pixels not valid in every band get 0."""
    pixel_ok = valid.all(axis=0)
    out = np.zeros(pixel_ok.shape, dtype=np.float64)
    if pixel_ok.any():
        out[pixel_ok] = model.predict_matrix(values[:, pixel_ok].T)
    return out


class Predictor:
    """
    Evaluate a model on every fully valid pixel of a feature raster.

    Row tiles of ``compute.tile_rows`` rows are predicted concurrently
    through dask.delayed on the threaded scheduler.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = get_logger('prediction')

        prediction = config.get('prediction', {})
        self.output_band = prediction.get('output_band', PREDICTION_BAND)
        self.clamp_negative = prediction.get('clamp_negative', True)

        compute = config.get('compute', {})
        self.tile_rows = compute.get('tile_rows', 256)
        self.num_workers = compute.get('num_workers', 1)

    def predict(self, model: CarbonModel, features: Raster) -> Raster:
        """
        Produce the single-band prediction raster.

        Raises:
            SchemaMismatch: If the feature bands differ from the model schema
        """
        model.schema.check(features)

        rows, _ = features.shape
        tiles = _row_tiles(rows, self.tile_rows)
        tasks = [
            dask.delayed(_predict_tile)(model, features.values[:, start:stop], features.valid[:, start:stop])
            for start, stop in tiles
        ]
        results = dask.compute(*tasks, scheduler='threads', num_workers=self.num_workers)

        estimate = np.concatenate(results, axis=0) if results else np.zeros(features.shape)
        if self.clamp_negative:
            estimate = np.maximum(estimate, 0.0)

        valid = features.valid_all()
        self.logger.info(f"Predicted {int(valid.sum())} pixels in {len(tiles)} row tiles")
        return Raster((self.output_band,), estimate[None], valid[None], features.transform, features.crs)

    def predict_dataset(self, model: CarbonModel, dataset: Dataset) -> np.ndarray:
        """Predictions for the samples of a dataset, in sample order."""
        if dataset.schema != model.schema:
            raise SchemaMismatch(
                f"Dataset bands {dataset.schema.bands} do not match model schema {model.schema.bands}",
                context={'expected': model.schema.bands, 'found': dataset.schema.bands},
            )
        estimate = model.predict_matrix(dataset.feature_matrix())
        if self.clamp_negative:
            estimate = np.maximum(estimate, 0.0)
        return estimate
