"""
Land cover masking from a categorical time series.

Builds a binary cover mask from the per-pixel temporal mode of categorical
land cover periods (Dynamic World style labels) and applies it to a raster
so that only pixels of the target class remain valid.

Author: Diego Bengochea
"""

from typing import Optional

import numpy as np
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger

from .io_utils import match_grid
from .raster import Raster
from .sources import CategoricalSource, DateRange, RetrievalGuard

COVER_MASK_BAND = 'cover_mask'
MODE_BAND = 'mode'


def temporal_mode(layers: Raster) -> Raster:
    """
    Per-pixel most frequent class over the bands of ``layers``.

    Only valid observations are counted. Ties resolve to the lowest class
    id. Pixels without any valid observation are invalid.
    """
    rows, cols = layers.shape
    values, valid = layers.values, layers.valid

    classes = np.unique(values[valid]) if layers.n_bands else np.array([])
    if classes.size == 0:
        return Raster((MODE_BAND,), np.zeros((1, rows, cols)), np.zeros((1, rows, cols), dtype=bool),
                      layers.transform, layers.crs)

    counts = np.stack([((values == c) & valid).sum(axis=0) for c in classes])
    # argmax returns the first maximum, classes are sorted ascending
    mode = classes[counts.argmax(axis=0)]
    observed = valid.any(axis=0)

    return Raster((MODE_BAND,), mode[None], observed[None], layers.transform, layers.crs)


def apply_cover_mask(raster: Raster, mask: Raster) -> Raster:
    """Keep only pixels where the mask is valid and equal to 1."""
    values, valid = mask.band_values(mask.bands[0])
    return raster.update_mask(valid & (values == 1))


class CoverMaskBuilder:
    """Binary mask of pixels whose dominant land cover class is the target class."""

    def __init__(self, categorical_source: CategoricalSource, guard: Optional[RetrievalGuard] = None):
        self.categorical_source = categorical_source
        self.guard = guard or RetrievalGuard()
        self.logger = get_logger('cover_mask')

    def build(
        self,
        region: Optional[BaseGeometry],
        date_range: DateRange,
        target_class: int,
        like: Raster
    ) -> Raster:
        """
        Build the cover mask on the grid of ``like``.

        Args:
            region: Region polygon
            date_range: Period over which the mode is taken
            target_class: Class id kept by the mask
            like: Raster whose grid the mask must share

        Returns:
            Raster: Single ``cover_mask`` band, 1 for target class and 0 otherwise
        """
        layers = self.guard.call('land cover', self.categorical_source.fetch, region, date_range)

        if layers.n_bands == 0:
            self.logger.warning("No land cover periods in date range; mask is empty")
            rows, cols = like.shape
            return Raster((COVER_MASK_BAND,), np.zeros((1, rows, cols)),
                          np.zeros((1, rows, cols), dtype=bool), like.transform, like.crs)

        mode = temporal_mode(match_grid(layers, like))
        values, valid = mode.band_values(MODE_BAND)
        mask = (values == target_class).astype(np.float64)

        n_target = int((valid & (mask == 1)).sum())
        self.logger.info(
            f"Cover mask from {layers.n_bands} periods: {n_target} of {int(valid.sum())} "
            f"observed pixels are class {target_class}"
        )
        return Raster((COVER_MASK_BAND,), mask[None], valid[None], like.transform, like.crs)
