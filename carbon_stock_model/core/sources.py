"""
External collaborator interfaces and in-memory backends.

The pipeline only consumes data through these interfaces: boundary
polygons, optical scenes, categorical land cover, terrain elevation, and an
export sink. GeoTIFF-backed implementations live in io_utils; the in-memory
backends here serve tests and callers that already hold arrays.

All retrieval calls made by the pipeline go through RetrievalGuard, which
bounds the wait with a timeout and honours a caller-supplied cancellation
token.

Author: Diego Bengochea
"""

import concurrent.futures
import threading
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple, Union

from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from shared_utils import get_logger

from .exceptions import RetrievalCancelled, RetrievalTimeout
from .raster import REGION_CRS, Raster, reproject_geometry

# Worker threads shared by every retrieval; a timed-out call keeps its worker
# until it returns, so at most this many calls can be outstanding at once
RETRIEVAL_WORKERS = 4
RETRIEVAL_EXECUTOR = concurrent.futures.ThreadPoolExecutor(
    max_workers=RETRIEVAL_WORKERS, thread_name_prefix='retrieval'
)


@dataclass(frozen=True)
class DateRange:
    """Half-open date interval [start, end)."""

    start: date
    end: date

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Date range end {self.end} must be after start {self.start}")

    @classmethod
    def parse(cls, start: Union[str, date], end: Union[str, date]) -> 'DateRange':
        if isinstance(start, str):
            start = date.fromisoformat(start)
        if isinstance(end, str):
            end = date.fromisoformat(end)
        return cls(start, end)

    def __contains__(self, day: date) -> bool:
        return self.start <= day < self.end


@dataclass(frozen=True, eq=False)
class Scene:
    """One optical acquisition with its scene-level cloud percentage."""

    raster: Raster
    acquired: date
    cloud_percentage: float


class BoundarySource(Protocol):
    def containing(self, point) -> BaseGeometry:
        ...


class SceneSource(Protocol):
    def fetch(self, region: Optional[BaseGeometry], date_range: DateRange,
              cloud_threshold: float) -> List[Raster]:
        ...


class CategoricalSource(Protocol):
    def fetch(self, region: Optional[BaseGeometry], date_range: DateRange) -> Raster:
        ...


class TerrainSource(Protocol):
    def elevation(self, region: Optional[BaseGeometry]) -> Raster:
        ...


class ExportSink(Protocol):
    def write(self, raster: Raster, destination: str, scale: Optional[float],
              crs: Optional[str], fmt: str) -> Path:
        ...


def intersects_region(raster: Raster, region: Optional[BaseGeometry], region_crs: str = REGION_CRS) -> bool:
    """Test between a raster footprint and a region polygon, in the raster CRS."""
    if region is None:
        return True
    return box(*raster.bounds).intersects(reproject_geometry(region, region_crs, raster.crs))


def select_scenes(
    scenes: Sequence[Scene],
    region: Optional[BaseGeometry],
    date_range: DateRange,
    cloud_threshold: float
) -> List[Raster]:
    """Scenes intersecting the region, inside the date range and below the cloud threshold."""
    return [
        s.raster for s in scenes
        if s.acquired in date_range
        and s.cloud_percentage < cloud_threshold
        and intersects_region(s.raster, region)
    ]


class InMemorySceneSource:
    """Scene source over a list of already loaded scenes."""

    def __init__(self, scenes: Sequence[Scene]):
        self.scenes = list(scenes)

    def fetch(self, region, date_range, cloud_threshold):
        return select_scenes(self.scenes, region, date_range, cloud_threshold)


class InMemoryCategoricalSource:
    """
    Categorical source over dated single-band class rasters.

    ``fetch`` stacks the periods inside the date range as bands named by
    their ISO date. When nothing matches, a zero-band raster on ``grid`` is
    returned.
    """

    def __init__(self, layers: Sequence[Tuple[date, Raster]], grid: Raster):
        self.layers = sorted(layers, key=lambda layer: layer[0])
        self.grid = grid

    def fetch(self, region, date_range):
        selected = [
            (day, raster) for day, raster in self.layers
            if day in date_range and intersects_region(raster, region)
        ]
        if not selected:
            return Raster.empty_like(self.grid)

        first = selected[0][1].rename([selected[0][0].isoformat()])
        rest = [r.rename([d.isoformat()]) for d, r in selected[1:]]
        return first.add_bands(*rest)


class InMemoryTerrainSource:
    """Terrain source wrapping a single elevation raster."""

    def __init__(self, elevation: Raster):
        self._elevation = elevation

    def elevation(self, region):
        return self._elevation


class RetrievalGuard:
    """
    Run retrieval calls with a timeout and a cancellation token.

    The call runs on the shared RETRIEVAL_EXECUTOR; if it does not finish
    within ``timeout_seconds`` a RetrievalTimeout is raised. A call still
    queued is cancelled; one already running finishes on its worker and its
    result is discarded. A set cancellation token stops the run before the
    call starts or as soon as it returns.
    """

    def __init__(self, timeout_seconds: Optional[float] = None,
                 cancel_token: Optional[threading.Event] = None):
        self.timeout_seconds = timeout_seconds
        self.cancel_token = cancel_token
        self.logger = get_logger('sources')

    def _check_cancelled(self, description: str) -> None:
        if self.cancel_token is not None and self.cancel_token.is_set():
            raise RetrievalCancelled(
                f"Retrieval cancelled: {description}",
                context={'retrieval': description},
            )

    def call(self, description: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        self._check_cancelled(description)
        self.logger.debug(f"Retrieving {description} (timeout: {self.timeout_seconds}s)")

        future = RETRIEVAL_EXECUTOR.submit(func, *args, **kwargs)
        try:
            result = future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise RetrievalTimeout(
                f"Retrieval of {description} exceeded {self.timeout_seconds}s",
                context={'retrieval': description, 'timeout_seconds': self.timeout_seconds},
            )

        self._check_cancelled(description)
        return result
