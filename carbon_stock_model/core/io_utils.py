"""
I/O Utilities for Carbon Stock Estimation

GeoTIFF-backed implementations of the scene, land cover, terrain and export
interfaces, plain raster read and write helpers, and grid matching
through rioxarray.

Scene and land cover GeoTIFFs carry their metadata as dataset tags:
ACQUISITION_DATE (ISO date) and, for optical scenes,
CLOUDY_PIXEL_PERCENTAGE. Band descriptions are used as band names.

Author: Diego Bengochea
"""

from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
import rioxarray  # noqa: F401  registers the .rio accessor
from affine import Affine
from rasterio.enums import Resampling
from rasterio.errors import RasterioError
from rioxarray.exceptions import RioXarrayError

from shared_utils import ensure_directory, find_files, get_logger, validate_file_exists

from .exceptions import ExportError
from .raster import NODATA_VALUE, Raster
from .sources import DateRange, Scene, intersects_region, select_scenes

ACQUISITION_DATE_TAG = 'ACQUISITION_DATE'
CLOUD_TAG = 'CLOUDY_PIXEL_PERCENTAGE'
RASTER_EXTENSIONS = ['.tif', '.tiff']
SUPPORTED_FORMATS = ('geotiff', 'gtiff')


def read_raster(path: Union[str, Path], bands: Optional[Sequence[str]] = None) -> Raster:
    """
    Read a GeoTIFF into a Raster.

    Band names come from the band descriptions, falling back to
    ``band_<n>``. Nodata and non-finite cells are invalid.

    Args:
        path: Raster file
        bands: Optional subset of band names to keep, in order

    Returns:
        Raster: Loaded raster
    """
    path = validate_file_exists(path, 'Raster')
    with rasterio.open(path) as src:
        data = src.read().astype(np.float64)
        names = [
            desc if desc else f"band_{i + 1}"
            for i, desc in enumerate(src.descriptions)
        ]
        valid = np.isfinite(data)
        if src.nodata is not None and not np.isnan(src.nodata):
            valid &= data != src.nodata
        crs = src.crs.to_string() if src.crs else ''
        raster = Raster(tuple(names), data, valid, src.transform, crs)

    if bands is not None:
        raster = raster.select(bands)
    return raster


def write_raster(raster: Raster, path: Union[str, Path], tags: Optional[Dict[str, str]] = None) -> Path:
    """Write a Raster as a float32 GeoTIFF on its own grid, with band descriptions and tags."""
    path = Path(path)
    ensure_directory(path.parent)
    rows, cols = raster.shape

    profile = {
        'driver': 'GTiff',
        'height': rows,
        'width': cols,
        'count': raster.n_bands,
        'dtype': 'float32',
        'crs': raster.crs or None,
        'transform': raster.transform,
        'nodata': NODATA_VALUE,
        'compress': 'lzw',
    }
    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(raster.values.astype(np.float32))
        for i, name in enumerate(raster.bands, start=1):
            dst.set_band_description(i, name)
        if tags:
            dst.update_tags(**tags)
    return path


def read_acquisition_tags(path: Union[str, Path]) -> Tuple[Optional[date], Optional[float]]:
    """Acquisition date and cloud percentage tags of a raster file."""
    with rasterio.open(path) as src:
        tags = src.tags()
    acquired = tags.get(ACQUISITION_DATE_TAG)
    cloud = tags.get(CLOUD_TAG)
    return (
        date.fromisoformat(acquired[:10]) if acquired else None,
        float(cloud) if cloud is not None else None,
    )


def _raster_paths(directory: Union[str, Path]) -> List[Path]:
    return find_files(directory, '*', recursive=True, file_types=RASTER_EXTENSIONS)


class GeoTiffSceneSource:
    """Optical scenes stored as one multi-band GeoTIFF per acquisition."""

    def __init__(self, scene_dir: Union[str, Path]):
        self.scene_dir = Path(scene_dir)
        self.logger = get_logger('io')

    def fetch(self, region, date_range: DateRange, cloud_threshold: float) -> List[Raster]:
        scenes = []
        for path in _raster_paths(self.scene_dir):
            acquired, cloud = read_acquisition_tags(path)
            if acquired is None or cloud is None:
                self.logger.warning(f"Skipping {path.name}: missing {ACQUISITION_DATE_TAG} or {CLOUD_TAG} tag")
                continue
            if acquired not in date_range or cloud >= cloud_threshold:
                continue
            scenes.append(Scene(read_raster(path), acquired, cloud))

        selected = select_scenes(scenes, region, date_range, cloud_threshold)
        self.logger.info(f"{len(selected)} scenes selected from {self.scene_dir}")
        return selected


class GeoTiffCategoricalSource:
    """Land cover periods stored as one single-band GeoTIFF per period."""

    def __init__(self, land_cover_dir: Union[str, Path]):
        self.land_cover_dir = Path(land_cover_dir)
        self.logger = get_logger('io')

    def fetch(self, region, date_range: DateRange) -> Raster:
        layers = []
        for path in _raster_paths(self.land_cover_dir):
            acquired, _ = read_acquisition_tags(path)
            if acquired is None or acquired not in date_range:
                continue
            raster = read_raster(path)
            if not intersects_region(raster, region):
                continue
            layers.append((acquired, raster.select([raster.bands[0]])))

        if not layers:
            self.logger.warning(f"No land cover periods found in {self.land_cover_dir}")
            return Raster((), np.zeros((0, 0, 0)), np.zeros((0, 0, 0), dtype=bool), Affine.identity(), '')

        layers.sort(key=lambda layer: layer[0])
        first = layers[0][1].rename([layers[0][0].isoformat()])
        return first.add_bands(*[r.rename([d.isoformat()]) for d, r in layers[1:]])


class GeoTiffTerrainSource:
    """Elevation from a single GeoTIFF."""

    def __init__(self, elevation_file: Union[str, Path]):
        self.elevation_file = Path(elevation_file)

    def elevation(self, region) -> Raster:
        raster = read_raster(self.elevation_file)
        return raster.select([raster.bands[0]])


class GeoTiffExportSink:
    """
    Export rasters as GeoTIFF through rioxarray.

    The raster is reprojected to the requested CRS and pixel size before
    writing when either differs from its own grid.
    """

    def __init__(self, resampling: Resampling = Resampling.nearest):
        self.resampling = resampling
        self.logger = get_logger('io')

    def write(self, raster: Raster, destination: Union[str, Path], scale: Optional[float],
              crs: Optional[str], fmt: str = 'GeoTIFF') -> Path:
        if fmt.lower() not in SUPPORTED_FORMATS:
            raise ExportError(f"Unsupported export format '{fmt}'", context={'format': fmt})

        path = Path(destination)
        if path.suffix.lower() not in RASTER_EXTENSIONS:
            path = path.with_suffix('.tif')

        existed = path.exists()
        try:
            ensure_directory(path.parent)

            data = raster.to_xarray().fillna(NODATA_VALUE)
            data = data.rio.write_transform(raster.transform)
            data = data.rio.write_crs(raster.crs)
            data = data.rio.write_nodata(NODATA_VALUE)

            target_crs = crs or raster.crs
            same_scale = scale is None or np.allclose(raster.resolution, (scale, scale))
            if target_crs != raster.crs or not same_scale:
                data = data.rio.reproject(
                    target_crs,
                    resolution=scale,
                    resampling=self.resampling,
                    nodata=NODATA_VALUE,
                )

            data.astype(np.float32).rio.to_raster(path, driver='GTiff', compress='lzw')
        except (OSError, ValueError, RasterioError, RioXarrayError) as e:
            if not existed and path.is_file():
                path.unlink()
            raise ExportError(
                f"Failed to export raster to {path}: {e}",
                context={'destination': str(path), 'crs': crs, 'scale': scale},
            ) from e

        self.logger.info(f"Exported {raster.bands} to {path}")
        return path


def match_grid(raster: Raster, like: Raster, resampling: Resampling = Resampling.nearest) -> Raster:
    """
    Resample ``raster`` onto the grid of ``like``.

    Returns ``raster`` unchanged when the grids already match. Cells that
    fall outside the source footprint are invalid.
    """
    if raster.same_grid(like):
        return raster

    source = raster.to_xarray().fillna(NODATA_VALUE)
    source = source.rio.write_transform(raster.transform).rio.write_crs(raster.crs)
    source = source.rio.write_nodata(NODATA_VALUE)

    target = like.to_xarray().rio.write_transform(like.transform).rio.write_crs(like.crs)
    matched = source.rio.reproject_match(target, resampling=resampling, nodata=NODATA_VALUE)

    values = np.asarray(matched.values, dtype=np.float64)
    valid = np.isfinite(values) & (values != NODATA_VALUE)
    get_logger('io').debug(f"Resampled {raster.bands} from {raster.shape} to {like.shape}")
    return Raster(raster.bands, values, valid, like.transform, like.crs)
