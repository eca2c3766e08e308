"""
Feature compositing from optical time series, vegetation indices, texture and terrain.

This module builds the fixed-schema predictor stack used for both training
and inference:

1. Cloud-filtered scene retrieval for the region and period
2. Per-pixel temporal median composite (cloud-robust reflectance base layer)
3. Digital number to surface reflectance scaling
4. NDVI and EVI band algebra (zero denominators become invalid pixels)
5. Optional NDVI texture (neighbourhood standard deviation)
6. Optional terrain: elevation and slope in degrees
7. Concatenation in a declared, fixed band order

All transforms are pure functions over immutable rasters.

Author: Diego Bengochea
"""

import warnings
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import xarray as xr
from rasterio.crs import CRS
from rasterio.enums import Resampling
from scipy import ndimage
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger

from .exceptions import NoScenesAvailable
from .io_utils import match_grid
from .raster import REGION_CRS, FeatureSchema, Raster
from .sources import DateRange, RetrievalGuard, SceneSource, TerrainSource

# Sentinel-2 L2A digital numbers to surface reflectance
REFLECTANCE_SCALE = 1e-4

# Approximate metres per degree, used for slope on geographic grids
METERS_PER_DEGREE_LAT = 110540.0
METERS_PER_DEGREE_LON = 111320.0

NDVI_BAND = 'NDVI'
EVI_BAND = 'EVI'
TEXTURE_BAND = 'NDVI_std'
ELEVATION_BAND = 'elevation'
SLOPE_BAND = 'slope'


def temporal_median(scenes: Sequence[Raster]) -> Raster:
    """
    Per-pixel median across scenes, ignoring invalid observations.

    Args:
        scenes: Rasters sharing grid and band order

    Returns:
        Raster: Composite; pixels with no valid observation are invalid
    """
    reference = scenes[0]
    for scene in scenes[1:]:
        if not scene.same_grid(reference) or scene.bands != reference.bands:
            raise ValueError("All scenes must share grid geometry and band order")

    stack = xr.concat([scene.to_xarray() for scene in scenes], dim='time')

    # All-NaN pixels legitimately yield NaN
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', category=RuntimeWarning)
        median = stack.median(dim='time', skipna=True)

    values = median.values
    return Raster(reference.bands, values, np.isfinite(values), reference.transform, reference.crs)


def scale_reflectance(raster: Raster, scale: float = REFLECTANCE_SCALE) -> Raster:
    return Raster(raster.bands, raster.values * scale, raster.valid, raster.transform, raster.crs)


def _safe_ratio(numerator: np.ndarray, denominator: np.ndarray,
                valid: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    valid = valid & (denominator != 0)
    out = np.zeros_like(numerator, dtype=np.float64)
    np.divide(numerator, denominator, out=out, where=valid)
    return out, valid


def compute_ndvi(raster: Raster, nir: str, red: str) -> Raster:
    """NDVI = (NIR - RED) / (NIR + RED)."""
    nir_v, nir_ok = raster.band_values(nir)
    red_v, red_ok = raster.band_values(red)
    values, valid = _safe_ratio(nir_v - red_v, nir_v + red_v, nir_ok & red_ok)
    return Raster((NDVI_BAND,), values[None], valid[None], raster.transform, raster.crs)


def compute_evi(raster: Raster, nir: str, red: str, blue: str) -> Raster:
    """EVI = 2.5 * (NIR - RED) / (NIR + 6 * RED - 7.5 * BLUE + 1)."""
    nir_v, nir_ok = raster.band_values(nir)
    red_v, red_ok = raster.band_values(red)
    blue_v, blue_ok = raster.band_values(blue)
    values, valid = _safe_ratio(
        2.5 * (nir_v - red_v),
        nir_v + 6.0 * red_v - 7.5 * blue_v + 1.0,
        nir_ok & red_ok & blue_ok,
    )
    return Raster((EVI_BAND,), values[None], valid[None], raster.transform, raster.crs)


def neighborhood_std(raster: Raster, radius: int = 1, name: str = TEXTURE_BAND) -> Raster:
    """
    Population standard deviation within a (2r+1) x (2r+1) window.

    Only valid neighbours contribute; a pixel is valid iff its own value is.
    """
    values, valid = raster.values[0], raster.valid[0]
    size = 2 * radius + 1
    kernel = np.ones((size, size))

    filled = np.where(valid, values, 0.0)
    count = ndimage.correlate(valid.astype(np.float64), kernel, mode='constant', cval=0.0)
    total = ndimage.correlate(filled, kernel, mode='constant', cval=0.0)
    total_sq = ndimage.correlate(filled * filled, kernel, mode='constant', cval=0.0)

    has_neighbours = count > 0
    mean = np.divide(total, count, out=np.zeros_like(total), where=has_neighbours)
    mean_sq = np.divide(total_sq, count, out=np.zeros_like(total_sq), where=has_neighbours)
    std = np.sqrt(np.clip(mean_sq - mean ** 2, 0.0, None))

    return Raster((name,), std[None], valid[None], raster.transform, raster.crs)


def _pixel_size_meters(raster: Raster) -> Tuple[float, float]:
    xres, yres = raster.resolution
    crs = CRS.from_user_input(raster.crs)
    if not crs.is_geographic:
        return xres, yres

    _, bottom, _, top = raster.bounds
    center_lat = np.radians((bottom + top) / 2.0)
    return xres * METERS_PER_DEGREE_LON * np.cos(center_lat), yres * METERS_PER_DEGREE_LAT


def terrain_slope(elevation: Raster, name: str = SLOPE_BAND) -> Raster:
    """
    Slope in degrees from central differences of elevation.

    A pixel is valid iff it and its four direct neighbours inside the grid
    are valid. Geographic grids are converted to metres at the centre
    latitude.
    """
    values, valid = elevation.values[0], elevation.valid[0]
    rows, cols = elevation.shape

    if rows < 2 or cols < 2:
        return Raster((name,), np.zeros((1, rows, cols)), np.zeros((1, rows, cols), dtype=bool),
                      elevation.transform, elevation.crs)

    xsize, ysize = _pixel_size_meters(elevation)
    filled = np.where(valid, values, 0.0)
    dz_dy, dz_dx = np.gradient(filled, ysize, xsize)
    slope = np.degrees(np.arctan(np.hypot(dz_dx, dz_dy)))

    cross = ndimage.generate_binary_structure(2, 1)
    stencil_valid = ndimage.binary_erosion(valid, structure=cross, border_value=1)

    return Raster((name,), slope[None], stencil_valid[None], elevation.transform, elevation.crs)


class FeatureCompositor:
    """
    Build the multi-band feature raster for a region and period.

    Band order is fixed: reflectance bands (renamed through the configured
    aliases, in request order), NDVI, EVI, then optional NDVI texture, then
    optional elevation and slope.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        scene_source: SceneSource,
        terrain_source: Optional[TerrainSource] = None,
        guard: Optional[RetrievalGuard] = None
    ):
        self.config = config
        self.logger = get_logger('feature_compositing')

        comp = config['compositing']
        self.reflectance_scale = comp.get('reflectance_scale', REFLECTANCE_SCALE)
        self.band_aliases = comp.get('band_aliases') or {}
        self.index_bands = comp['index_bands']
        self.include_texture = comp.get('include_texture', False)
        self.texture_radius = comp.get('texture_radius', 1)
        self.include_terrain = comp.get('include_terrain', False)
        self.clip_to_region = comp.get('clip_to_region', True)

        if self.include_terrain and terrain_source is None:
            raise ValueError("Terrain features requested but no terrain source given")

        self.scene_source = scene_source
        self.terrain_source = terrain_source
        self.guard = guard or RetrievalGuard()

        self.logger.info("FeatureCompositor initialized")

    def schema_for(self, bands: Sequence[str]) -> FeatureSchema:
        """Feature schema produced for the requested source bands."""
        names: List[str] = [self.band_aliases.get(b, b) for b in bands]
        names += [NDVI_BAND, EVI_BAND]
        if self.include_texture:
            names.append(TEXTURE_BAND)
        if self.include_terrain:
            names += [ELEVATION_BAND, SLOPE_BAND]
        return FeatureSchema(tuple(names))

    def composite(
        self,
        region: Optional[BaseGeometry],
        date_range: DateRange,
        cloud_threshold: float,
        bands: Sequence[str]
    ) -> Raster:
        """
        Composite the feature stack.

        Args:
            region: Region polygon (None for the full scene extent)
            date_range: Acquisition period
            cloud_threshold: Scene cloud percentage upper bound (0-100, exclusive)
            bands: Source reflectance band names, in output order

        Returns:
            Raster: Feature stack following schema_for(bands)

        Raises:
            NoScenesAvailable: If no scene passes the filters
        """
        if not 0 <= cloud_threshold <= 100:
            raise ValueError(f"Cloud threshold must be within [0, 100], got {cloud_threshold}")

        scenes = self.guard.call(
            'scenes', self.scene_source.fetch, region, date_range, cloud_threshold
        )
        if not scenes:
            raise NoScenesAvailable(
                f"No scenes between {date_range.start} and {date_range.end} "
                f"with cloud percentage below {cloud_threshold}",
                context={'date_range': (date_range.start, date_range.end),
                         'cloud_threshold': cloud_threshold},
            )
        self.logger.info(f"Compositing {len(scenes)} scenes")

        nir, red, blue = self.index_bands['nir'], self.index_bands['red'], self.index_bands['blue']
        source_bands = list(dict.fromkeys(list(bands) + [nir, red, blue]))

        composite = temporal_median([scene.select(source_bands) for scene in scenes])
        reflectance = scale_reflectance(composite, self.reflectance_scale)

        ndvi = compute_ndvi(reflectance, nir=nir, red=red)
        evi = compute_evi(reflectance, nir=nir, red=red, blue=blue)

        layers = [ndvi, evi]
        if self.include_texture:
            layers.append(neighborhood_std(ndvi, radius=self.texture_radius))

        if self.include_terrain:
            elevation = self.guard.call('elevation', self.terrain_source.elevation, region)
            elevation = elevation.select([elevation.bands[0]]).rename([ELEVATION_BAND])
            elevation = match_grid(elevation, reflectance, Resampling.bilinear)
            layers += [elevation, terrain_slope(elevation)]

        features = reflectance.select(bands).rename(
            [self.band_aliases.get(b, b) for b in bands]
        ).add_bands(*layers)

        if region is not None and self.clip_to_region:
            features = features.clip(region, REGION_CRS)

        self.schema_for(bands).check(features)

        n_valid = int(features.valid_all().sum())
        self.logger.info(f"Feature stack: {features.n_bands} bands, {n_valid} fully valid pixels")
        return features
