import numpy as np
import pytest

from carbon_stock_model.core.exceptions import SchemaMismatch
from carbon_stock_model.core.prediction import Predictor
from carbon_stock_model.core.raster import FeatureSchema
from carbon_stock_model.core.regression import RobustLinearModel

from conftest import make_dataset, make_raster


def _model(intercept=1.0, coefficient=2.0):
    return RobustLinearModel(FeatureSchema(('feature',)), 'carbon_tonnes_per_ha', intercept, [coefficient])


def test_predicts_every_valid_pixel(config, ramp_raster):
    prediction = Predictor(config).predict(_model(), ramp_raster)

    assert prediction.bands == ('estimated_carbon',)
    assert prediction.same_grid(ramp_raster)
    assert np.allclose(prediction.values[0], 2 * np.arange(1, 17).reshape(4, 4) + 1)


def test_invalid_feature_pixels_stay_invalid(config):
    features = make_raster([[[1.0, np.nan], [3.0, 4.0]]], ['feature'])
    prediction = Predictor(config).predict(_model(), features)

    assert prediction.valid[0].tolist() == [[True, False], [True, True]]


def test_row_tiling_does_not_change_result(config, ramp_raster):
    whole = Predictor(config).predict(_model(), ramp_raster)
    config['compute']['tile_rows'] = 1
    tiled = Predictor(config).predict(_model(), ramp_raster)

    assert np.array_equal(whole.values, tiled.values)
    assert np.array_equal(whole.valid, tiled.valid)


def test_negative_estimates_are_clamped(config, ramp_raster):
    model = _model(intercept=-20.0)

    clamped = Predictor(config).predict(model, ramp_raster)
    config['prediction']['clamp_negative'] = False
    raw = Predictor(config).predict(model, ramp_raster)

    assert (clamped.values[0] >= 0).all()
    assert (raw.values[0] < 0).any()


def test_schema_mismatch_is_an_error(config, ramp_raster):
    renamed = ramp_raster.rename(['other'])

    with pytest.raises(SchemaMismatch):
        Predictor(config).predict(_model(), renamed)


def test_predict_dataset(config):
    dataset = make_dataset([1.0, 2.0, -10.0], [3.0, 5.0, 0.0], ['feature'])

    assert Predictor(config).predict_dataset(_model(), dataset).tolist() == [3.0, 5.0, 0.0]

    with pytest.raises(SchemaMismatch):
        Predictor(config).predict_dataset(_model(), make_dataset([1.0], [3.0], ['other']))
