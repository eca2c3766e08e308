"""
Region resolution against an administrative boundary layer.

Author: Diego Bengochea
"""

from pathlib import Path
from typing import Optional, Union

import geopandas as gpd
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger, validate_file_exists

from .exceptions import NoRegionFound
from .sources import BoundarySource, RetrievalGuard


class GeoDataFrameBoundarySource:
    """
    Boundary source backed by a GeoDataFrame of polygons.

    Features are reprojected to EPSG:4326 so that lon/lat points can be
    queried directly. When several polygons contain the point, the first in
    source order wins.
    """

    def __init__(self, boundaries: gpd.GeoDataFrame):
        if boundaries.crs is not None:
            boundaries = boundaries.to_crs(epsg=4326)
        self.boundaries = boundaries.reset_index(drop=True)
        self.logger = get_logger('region')

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'GeoDataFrameBoundarySource':
        return cls(gpd.read_file(validate_file_exists(path, 'Boundaries')))

    def containing(self, point: Point) -> BaseGeometry:
        matches = self.boundaries[self.boundaries.geometry.contains(point)]

        if matches.empty:
            raise NoRegionFound(
                f"No boundary polygon contains point ({point.x}, {point.y})",
                context={'point': (point.x, point.y)},
            )
        if len(matches) > 1:
            self.logger.warning(
                f"{len(matches)} boundaries contain ({point.x}, {point.y}); using the first"
            )
        return matches.geometry.iloc[0]


class RegionResolver:
    """Map a lon/lat location to its enclosing boundary polygon."""

    def __init__(self, boundary_source: BoundarySource, guard: Optional[RetrievalGuard] = None):
        self.boundary_source = boundary_source
        self.guard = guard or RetrievalGuard()
        self.logger = get_logger('region')

    def resolve(self, lon: float, lat: float) -> BaseGeometry:
        point = Point(lon, lat)
        region = self.guard.call('boundaries', self.boundary_source.containing, point)
        self.logger.info(f"Resolved region for ({lon}, {lat}): bounds {tuple(round(b, 4) for b in region.bounds)}")
        return region
