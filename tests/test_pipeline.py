import threading
from datetime import date
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from carbon_stock_model.core.carbon_stock_pipeline import CarbonStockPipeline
from carbon_stock_model.core.exceptions import ExportError, InsufficientData, NoRegionFound, RetrievalCancelled
from carbon_stock_model.core.io_utils import GeoTiffExportSink
from carbon_stock_model.core.prediction import Predictor
from carbon_stock_model.core.region import GeoDataFrameBoundarySource
from carbon_stock_model.core.regression import RegressionTrainer
from carbon_stock_model.core.sampling import Sampler, split_dataset, stream_seeds
from carbon_stock_model.core.sources import InMemoryCategoricalSource, InMemorySceneSource
from carbon_stock_model.core.validation import Validator, rmse

from conftest import GEO_CRS, GEO_TRANSFORM, make_dataset, make_raster, make_scene


class RecordingSink:
    """Export sink that records writes instead of touching disk."""

    def __init__(self):
        self.writes = []

    def write(self, raster, destination, scale, crs, fmt):
        self.writes.append((raster, destination, scale, crs, fmt))
        return destination


def _usable_seed(dataset, train_fraction, min_train, split_seed=lambda seed: seed):
    for seed in range(100):
        split = split_dataset(dataset, train_fraction, split_seed(seed))
        if len(split.test) > 0 and len(split.train) >= min_train:
            return seed
    raise AssertionError("No seed produced a usable split")


def _split_with_test_samples(dataset, train_fraction, min_train):
    return split_dataset(dataset, train_fraction, _usable_seed(dataset, train_fraction, min_train))


def test_ramp_scenario_linear(config, ramp_raster, ramp_labels):
    config['training']['variant'] = 'linear'
    dataset = Sampler(config).sample(ramp_raster, ramp_labels, 100, 10.0, 42)
    split = _split_with_test_samples(dataset, 0.8, 2)

    model = RegressionTrainer(config).train(split.train)
    prediction = Predictor(config).predict(model, ramp_raster)

    predicted = np.array([prediction.values[0, s.row, s.col] for s in split.test])
    assert rmse(predicted, split.test.labels()) < 0.5
    assert Validator(config).validate_dataset(model, split.test).rmse < 0.5


def test_ramp_scenario_ensemble(config, ramp_raster, ramp_labels):
    config['training']['variant'] = 'ensemble'
    config['training']['ensemble']['n_trees'] = 10
    dataset = Sampler(config).sample(ramp_raster, ramp_labels, 100, 10.0, 42)
    split = _split_with_test_samples(dataset, 0.8, 10)

    model = RegressionTrainer(config).train(split.train)
    prediction = Predictor(config).predict(model, ramp_raster)

    assert prediction.valid.all()
    predicted = np.array([prediction.values[0, s.row, s.col] for s in split.test])
    # Trees are piecewise constant, held-out ramp values fall between leaves
    assert rmse(predicted, split.test.labels()) < 2.5

    again = RegressionTrainer(config).train(split.train)
    assert np.array_equal(Predictor(config).predict(again, ramp_raster).values, prediction.values)


def test_all_invalid_mask_leads_to_insufficient_data(config, ramp_raster, ramp_labels):
    masked = ramp_raster.update_mask(np.zeros((4, 4), dtype=bool))
    dataset = Sampler(config).sample(masked, ramp_labels, 10, 10.0, 42)

    assert len(dataset) == 0
    with pytest.raises(InsufficientData):
        RegressionTrainer(config).train(split_dataset(dataset, 0.7, 42).train)


@pytest.fixture
def geo_inputs():
    """In-memory sources on a 4x4 geographic grid around the default region point."""
    rng = np.random.default_rng(11)
    blue = rng.integers(200, 800, size=(4, 4)).astype(float)
    red = rng.integers(300, 1500, size=(4, 4)).astype(float)
    nir = rng.integers(2000, 5000, size=(4, 4)).astype(float)

    scenes = [
        make_scene({'B2': blue, 'B4': red, 'B8': nir}, date(2022, month, 1), 5.0, GEO_TRANSFORM, GEO_CRS)
        for month in (2, 5, 8)
    ]
    noise = np.full((4, 4), 9000.0)
    scenes.append(make_scene({'B2': noise, 'B4': noise, 'B8': noise}, date(2022, 7, 1), 80.0, GEO_TRANSFORM, GEO_CRS))

    grid = scenes[0].raster
    trees = np.ones((4, 4))
    trees[0, 0] = 6
    cover = [(date(2022, month, 1), make_raster([trees], ['label'], GEO_TRANSFORM, GEO_CRS)) for month in (3, 9)]

    reference = make_raster([100.0 * nir * 1e-4 + 5.0], ['carbon_tonnes_per_ha'], GEO_TRANSFORM, GEO_CRS)

    boundaries = gpd.GeoDataFrame(
        {'name': ['Region']}, geometry=[box(80.9, 7.9, 81.1, 8.1)], crs=GEO_CRS
    )
    return {
        'boundary_source': GeoDataFrameBoundarySource(boundaries),
        'scene_source': InMemorySceneSource(scenes),
        'categorical_source': InMemoryCategoricalSource(cover, grid=grid),
        'reference': reference,
        'grid': grid,
    }


@pytest.fixture
def pipeline_config(config):
    config['region']['point'] = [81.002, 7.998]
    config['compositing'].update({'bands': ['B2', 'B4', 'B8'], 'include_texture': False, 'include_terrain': False})
    config['sampling'].update({'n_samples': 100, 'scale': 0.001, 'train_fraction': 0.5})
    # 15 tree pixels; the linear fit needs 6 training rows for 5 features
    stand_in = make_dataset(np.zeros((15, 5)), np.zeros(15), ['Blue', 'Red', 'NIR', 'NDVI', 'EVI'])
    config['sampling']['seed'] = _usable_seed(stand_in, 0.5, 6, lambda seed: stream_seeds(seed)[1])
    config['training']['variant'] = 'linear'
    config['compute']['num_workers'] = 2
    config['output']['scale'] = None
    config['output']['crs'] = None
    return config


def _pipeline(pipeline_config, geo_inputs, tmp_path, sink):
    return CarbonStockPipeline(
        config=pipeline_config,
        boundary_source=geo_inputs['boundary_source'],
        scene_source=geo_inputs['scene_source'],
        categorical_source=geo_inputs['categorical_source'],
        reference=geo_inputs['reference'],
        export_sink=sink,
        output_dir=tmp_path / 'estimates',
        samples_file=tmp_path / 'samples' / 'samples.csv',
    )


def test_pipeline_end_to_end(pipeline_config, geo_inputs, tmp_path):
    sink = RecordingSink()
    result = _pipeline(pipeline_config, geo_inputs, tmp_path, sink).run()

    assert result.features.bands == ('Blue', 'Red', 'NIR', 'NDVI', 'EVI')
    assert len(result.dataset) == 15
    assert (0, 0) not in {(s.row, s.col) for s in result.dataset}

    assert result.prediction.bands == ('estimated_carbon',)
    assert not result.prediction.valid[0, 0, 0]
    assert result.prediction.valid[0].sum() == 15

    assert result.test_validation.rmse < 1e-6
    assert result.raster_validation.n_samples == 15
    assert result.raster_validation.rmse < 1e-6

    assert [w[1] for w in sink.writes] == [
        str(tmp_path / 'estimates' / 'Estimated_Carbon_Stock'),
        str(tmp_path / 'estimates' / 'Reference_Carbon_Stock'),
    ]
    assert (tmp_path / 'samples' / 'samples.csv').exists()
    assert result.exports['config'].exists()


def test_pipeline_tags_failing_stage_and_exports_nothing(pipeline_config, geo_inputs, tmp_path):
    not_trees = np.full((4, 4), 2.0)
    geo_inputs['categorical_source'] = InMemoryCategoricalSource(
        [(date(2022, 3, 1), make_raster([not_trees], ['label'], GEO_TRANSFORM, GEO_CRS))],
        grid=geo_inputs['grid'],
    )
    sink = RecordingSink()

    with pytest.raises(InsufficientData) as excinfo:
        _pipeline(pipeline_config, geo_inputs, tmp_path, sink).run()

    assert excinfo.value.stage == 'train'
    assert excinfo.value.context['n_train'] == 0
    assert sink.writes == []
    assert not (tmp_path / 'samples' / 'samples.csv').exists()


def test_pipeline_point_outside_boundaries(pipeline_config, geo_inputs, tmp_path):
    pipeline_config['region']['point'] = [0.0, 0.0]

    with pytest.raises(NoRegionFound) as excinfo:
        _pipeline(pipeline_config, geo_inputs, tmp_path, RecordingSink()).run()

    assert excinfo.value.stage == 'resolve_region'
    assert excinfo.value.context['point'] == (0.0, 0.0)
    assert str(excinfo.value).startswith('[resolve_region]')


def test_pipeline_cancelled(pipeline_config, geo_inputs, tmp_path):
    token = threading.Event()
    token.set()
    sink = RecordingSink()

    with pytest.raises(RetrievalCancelled) as excinfo:
        _pipeline(pipeline_config, geo_inputs, tmp_path, sink).run(cancel_token=token)

    assert excinfo.value.stage == 'resolve_region'
    assert sink.writes == []


class FailingSink:
    """Export sink that writes a file on the first call and fails on the second."""

    def __init__(self):
        self.calls = 0

    def write(self, raster, destination, scale, crs, fmt):
        self.calls += 1
        if self.calls > 1:
            raise ExportError(f"Disk full writing {destination}")
        path = Path(destination + '.tif')
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()
        return path


def test_failed_export_leaves_no_files(pipeline_config, geo_inputs, tmp_path):
    pipeline_config['output']['save_samples'] = True
    sink = FailingSink()

    with pytest.raises(ExportError) as excinfo:
        _pipeline(pipeline_config, geo_inputs, tmp_path, sink).run()

    assert excinfo.value.stage == 'export'
    assert sink.calls == 2
    assert list((tmp_path / 'estimates').iterdir()) == []
    assert not (tmp_path / 'samples' / 'samples.csv').exists()


def test_failed_geotiff_export_removes_written_estimate(pipeline_config, geo_inputs, tmp_path):
    # A plain file where the reference directory should be makes the second write fail
    (tmp_path / 'estimates').mkdir()
    (tmp_path / 'estimates' / 'blocker').write_text('')
    pipeline_config['output']['reference_name'] = 'blocker/Reference'

    with pytest.raises(ExportError) as excinfo:
        _pipeline(pipeline_config, geo_inputs, tmp_path, GeoTiffExportSink()).run()

    assert excinfo.value.stage == 'export'
    assert [p.name for p in (tmp_path / 'estimates').iterdir()] == ['blocker']
