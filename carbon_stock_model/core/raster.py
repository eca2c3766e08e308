"""
Immutable raster and feature schema containers.

A Raster is a stack of named bands sharing one grid (affine transform, CRS
and shape). Validity is carried explicitly as a boolean array next to the
values: invalid cells are filled with NODATA_VALUE so that NaN or Inf never
travel between pipeline stages. All arrays are write-protected; every
operation returns a new Raster.

Author: Diego Bengochea
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import numpy as np
import xarray as xr
from affine import Affine
from rasterio.crs import CRS
from rasterio.features import geometry_mask

from .exceptions import SchemaMismatch

NODATA_VALUE = -9999.0

# Region polygons are resolved in geographic coordinates
REGION_CRS = 'EPSG:4326'


def reproject_geometry(geometry, src_crs: Optional[str], dst_crs: Optional[str]):
    """Geometry in dst_crs; returned unchanged when either CRS is unknown or both match."""
    if not src_crs or not dst_crs or CRS.from_user_input(src_crs) == CRS.from_user_input(dst_crs):
        return geometry
    return gpd.GeoSeries([geometry], crs=src_crs).to_crs(dst_crs).iloc[0]


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class Raster:
    """Multi-band raster with a per-band validity mask."""

    bands: Tuple[str, ...]
    values: np.ndarray
    valid: np.ndarray
    transform: Affine
    crs: str

    def __post_init__(self):
        bands = tuple(self.bands)
        values = np.asarray(self.values, dtype=np.float64)
        valid = np.asarray(self.valid, dtype=bool)

        if values.ndim != 3:
            raise ValueError(f"Raster values must be (bands, rows, cols), got shape {values.shape}")
        if valid.shape != values.shape:
            raise ValueError(f"Validity shape {valid.shape} does not match values shape {values.shape}")
        if len(bands) != values.shape[0]:
            raise ValueError(f"{len(bands)} band names for {values.shape[0]} bands")
        if len(set(bands)) != len(bands):
            raise ValueError(f"Duplicate band names: {bands}")

        # Non-finite values are never valid
        valid = valid & np.isfinite(values)
        values = np.where(valid, values, NODATA_VALUE)

        object.__setattr__(self, 'bands', bands)
        object.__setattr__(self, 'values', _frozen(values))
        object.__setattr__(self, 'valid', _frozen(valid))

    @classmethod
    def from_arrays(
        cls,
        arrays: Sequence[np.ndarray],
        bands: Sequence[str],
        transform: Affine,
        crs: str,
        valid: Optional[Sequence[np.ndarray]] = None
    ) -> 'Raster':
        """
        Build a raster from 2D arrays, one per band.

        NaN and Inf cells are treated as invalid when no explicit validity
        arrays are given.
        """
        values = np.stack([np.asarray(a, dtype=np.float64) for a in arrays])
        if valid is None:
            valid_stack = np.isfinite(values)
        else:
            valid_stack = np.stack([np.asarray(v, dtype=bool) for v in valid])
        return cls(tuple(bands), values, valid_stack, transform, crs)

    @classmethod
    def empty_like(cls, other: 'Raster') -> 'Raster':
        """Zero-band raster on the grid of ``other``."""
        rows, cols = other.shape
        return cls(
            (), np.zeros((0, rows, cols)), np.zeros((0, rows, cols), dtype=bool),
            other.transform, other.crs
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.values.shape[1], self.values.shape[2]

    @property
    def n_bands(self) -> int:
        return len(self.bands)

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(left, bottom, right, top) in raster CRS."""
        rows, cols = self.shape
        x0, y0 = self.transform * (0, 0)
        x1, y1 = self.transform * (cols, rows)
        return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)

    def same_grid(self, other: 'Raster') -> bool:
        return (
            self.shape == other.shape
            and self.transform.almost_equals(other.transform)
            and self.crs == other.crs
        )

    def band_index(self, name: str) -> int:
        try:
            return self.bands.index(name)
        except ValueError:
            raise KeyError(f"Band '{name}' not in raster bands {self.bands}")

    def band(self, name: str) -> 'Raster':
        return self.select([name])

    def band_values(self, name: str) -> Tuple[np.ndarray, np.ndarray]:
        """Values and validity of a single band as 2D arrays."""
        i = self.band_index(name)
        return self.values[i], self.valid[i]

    def select(self, names: Iterable[str]) -> 'Raster':
        idx = [self.band_index(n) for n in names]
        return Raster(
            tuple(self.bands[i] for i in idx), self.values[idx], self.valid[idx],
            self.transform, self.crs
        )

    def rename(self, names: Sequence[str]) -> 'Raster':
        return Raster(tuple(names), self.values, self.valid, self.transform, self.crs)

    def add_bands(self, *others: 'Raster') -> 'Raster':
        """Concatenate bands of rasters sharing this grid."""
        for other in others:
            if not self.same_grid(other):
                raise ValueError("Cannot stack rasters with different grid geometry")
        bands = self.bands + tuple(b for o in others for b in o.bands)
        values = np.concatenate([self.values] + [o.values for o in others])
        valid = np.concatenate([self.valid] + [o.valid for o in others])
        return Raster(bands, values, valid, self.transform, self.crs)

    def update_mask(self, mask: np.ndarray) -> 'Raster':
        """Invalidate every band where ``mask`` is False."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match raster shape {self.shape}")
        return Raster(self.bands, self.values, self.valid & mask[None, :, :], self.transform, self.crs)

    def clip(self, geometry, geometry_crs: Optional[str] = None) -> 'Raster':
        """Invalidate pixels whose centre falls outside ``geometry`` (given in ``geometry_crs``, default raster CRS)."""
        geometry = reproject_geometry(geometry, geometry_crs, self.crs)
        inside = geometry_mask(
            [geometry], out_shape=self.shape, transform=self.transform, invert=True
        )
        return self.update_mask(inside)

    def valid_all(self) -> np.ndarray:
        """2D mask of pixels valid in every band."""
        if self.n_bands == 0:
            return np.zeros(self.shape, dtype=bool)
        return self.valid.all(axis=0)

    def pixel_centers(self, rows: np.ndarray, cols: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        xs, ys = self.transform * (np.asarray(cols) + 0.5, np.asarray(rows) + 0.5)
        return np.asarray(xs, dtype=np.float64), np.asarray(ys, dtype=np.float64)

    def to_xarray(self) -> xr.DataArray:
        """NaN-encoded DataArray with (band, y, x) dims and pixel-centre coords."""
        rows, cols = self.shape
        xs, _ = self.pixel_centers(np.zeros(cols), np.arange(cols))
        _, ys = self.pixel_centers(np.arange(rows), np.zeros(rows))
        data = np.where(self.valid, self.values, np.nan)
        return xr.DataArray(
            data,
            dims=('band', 'y', 'x'),
            coords={'band': np.arange(1, self.n_bands + 1), 'y': ys, 'x': xs},
            attrs={'long_name': self.bands},
        )


@dataclass(frozen=True)
class FeatureSchema:
    """Ordered, deduplicated band names a model expects as input."""

    bands: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        seen: List[str] = []
        for name in self.bands:
            if name not in seen:
                seen.append(name)
        object.__setattr__(self, 'bands', tuple(seen))

    def __len__(self) -> int:
        return len(self.bands)

    def __iter__(self):
        return iter(self.bands)

    def check(self, raster: Raster) -> None:
        """Raise SchemaMismatch unless raster bands match exactly, in order."""
        if raster.bands != self.bands:
            raise SchemaMismatch(
                f"Raster bands {raster.bands} do not match feature schema {self.bands}",
                context={'expected': self.bands, 'found': raster.bands},
            )
