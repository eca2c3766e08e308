"""
Shared fixtures: small synthetic rasters on projected and geographic grids.
"""

import copy
from datetime import date
from pathlib import Path

import numpy as np
import pytest
from affine import Affine

import carbon_stock_model
from carbon_stock_model.core.raster import FeatureSchema, Raster
from carbon_stock_model.core.sampling import Dataset, Sample
from carbon_stock_model.core.sources import Scene
from shared_utils import load_config

# 10 m pixels, UTM zone 44N
UTM_CRS = 'EPSG:32644'
UTM_TRANSFORM = Affine(10.0, 0.0, 500000.0, 0.0, -10.0, 900000.0)

# 0.001 degree pixels around the default region point
GEO_CRS = 'EPSG:4326'
GEO_TRANSFORM = Affine(0.001, 0.0, 81.0, 0.0, -0.001, 8.0)

PACKAGED_CONFIG = Path(carbon_stock_model.__file__).parent / 'config.yaml'


def make_raster(arrays, bands, transform=UTM_TRANSFORM, crs=UTM_CRS, valid=None):
    return Raster.from_arrays(
        [np.asarray(a, dtype=float) for a in arrays], bands, transform, crs, valid=valid
    )


def make_scene(band_arrays, acquired, cloud=0.0, transform=UTM_TRANSFORM, crs=UTM_CRS):
    bands = list(band_arrays)
    raster = make_raster([band_arrays[b] for b in bands], bands, transform, crs)
    return Scene(raster, acquired, cloud)


def make_dataset(features, labels, bands, label_name='carbon_tonnes_per_ha'):
    features = np.asarray(features, dtype=float)
    if features.ndim == 1:
        features = features[:, None]
    samples = tuple(
        Sample(x=float(i), y=0.0, row=0, col=i, features=tuple(row), label=float(y))
        for i, (row, y) in enumerate(zip(features, labels))
    )
    return Dataset(FeatureSchema(tuple(bands)), label_name, samples)


@pytest.fixture
def config():
    """Fresh copy of the packaged configuration."""
    return copy.deepcopy(load_config(PACKAGED_CONFIG))


@pytest.fixture
def ramp_raster():
    """4x4 single-band raster with values 1..16 in row-major order."""
    return make_raster([np.arange(1, 17).reshape(4, 4)], ['feature'])


@pytest.fixture
def ramp_labels(ramp_raster):
    """Noise-free label = 2 * feature + 1 on the ramp grid."""
    values, _ = ramp_raster.band_values('feature')
    return make_raster([2 * values + 1], ['carbon_tonnes_per_ha'])


@pytest.fixture
def reflectance_scenes():
    """Three clear 4x4 scenes with B2/B4/B8 digital numbers and one cloudy outlier."""
    rng = np.random.default_rng(0)
    blue = rng.integers(200, 800, size=(4, 4))
    red = rng.integers(300, 1500, size=(4, 4))
    nir = rng.integers(2000, 5000, size=(4, 4))

    scenes = [
        make_scene({'B2': blue, 'B4': red, 'B8': nir}, date(2022, month, 1), cloud=5.0)
        for month in (3, 6, 9)
    ]
    cloudy = np.full((4, 4), 9000)
    scenes.append(make_scene({'B2': cloudy, 'B4': cloudy, 'B8': cloudy}, date(2022, 7, 1), cloud=60.0))
    return scenes
