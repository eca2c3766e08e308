import numpy as np
import pandas as pd
import pytest

from carbon_stock_model.core.raster import FeatureSchema
from carbon_stock_model.core.sampling import Dataset, Sample, Sampler, split_dataset, stream_seeds

from conftest import GEO_CRS, GEO_TRANSFORM, make_dataset, make_raster


def test_all_pixels_are_candidates_at_native_scale(config, ramp_raster, ramp_labels):
    dataset = Sampler(config).sample(ramp_raster, ramp_labels, 100, 10.0, 42)

    assert len(dataset) == 16
    assert [(s.row, s.col) for s in dataset] == [(r, c) for r in range(4) for c in range(4)]
    assert all(s.label == 2 * s.features[0] + 1 for s in dataset)


def test_lattice_at_coarser_scale(config, ramp_raster, ramp_labels):
    dataset = Sampler(config).sample(ramp_raster, ramp_labels, 100, 20.0, 42)

    assert [(s.row, s.col) for s in dataset] == [(1, 1), (1, 3), (3, 1), (3, 3)]


def test_sample_coordinates_are_pixel_centres(config, ramp_raster, ramp_labels):
    dataset = Sampler(config).sample(ramp_raster, ramp_labels, 100, 10.0, 42)
    first = dataset.samples[0]

    assert (first.x, first.y) == (500005.0, 899995.0)


def test_sampling_is_deterministic(config, ramp_raster, ramp_labels):
    sampler = Sampler(config)
    a = sampler.sample(ramp_raster, ramp_labels, 5, 10.0, 7)
    b = sampler.sample(ramp_raster, ramp_labels, 5, 10.0, 7)

    assert len(a) == 5
    assert a.samples == b.samples
    rows_cols = [(s.row, s.col) for s in a]
    assert rows_cols == sorted(rows_cols)
    assert len(set(rows_cols)) == 5


def test_invalid_pixels_are_never_sampled(config, ramp_raster):
    labels = np.arange(16, dtype=float).reshape(4, 4)
    labels[0, :] = np.nan
    label_raster = make_raster([labels], ['carbon_tonnes_per_ha'])
    features = ramp_raster.update_mask(np.arange(16).reshape(4, 4) % 2 == 0)

    dataset = Sampler(config).sample(features, label_raster, 100, 10.0, 1)

    assert len(dataset) == 6
    assert all(s.row > 0 and s.col % 2 == 0 for s in dataset)


def test_all_invalid_mask_gives_empty_dataset(config, ramp_raster, ramp_labels):
    masked = ramp_raster.update_mask(np.zeros((4, 4), dtype=bool))
    dataset = Sampler(config).sample(masked, ramp_labels, 10, 10.0, 42)

    assert len(dataset) == 0
    assert dataset.feature_matrix().shape == (0, 1)


def test_sample_argument_checks(config, ramp_raster, ramp_labels):
    sampler = Sampler(config)
    other_grid = make_raster([np.ones((4, 4))], ['carbon_tonnes_per_ha'], GEO_TRANSFORM, GEO_CRS)

    with pytest.raises(ValueError):
        sampler.sample(ramp_raster, ramp_labels, 0, 10.0, 42)
    with pytest.raises(ValueError):
        sampler.sample(ramp_raster, other_grid, 10, 10.0, 42)


def test_split_is_complete_disjoint_and_deterministic():
    dataset = make_dataset(np.arange(50), np.arange(50) * 2.0, ['feature'])

    split = split_dataset(dataset, 0.7, 42)
    again = split_dataset(dataset, 0.7, 42)

    train_cols = {s.col for s in split.train}
    test_cols = {s.col for s in split.test}
    assert train_cols.isdisjoint(test_cols)
    assert train_cols | test_cols == set(range(50))
    assert split.train.samples == again.train.samples
    assert split.test.samples == again.test.samples


def test_split_follows_uniform_draws():
    dataset = make_dataset(np.arange(20), np.arange(20), ['feature'])
    draws = np.random.default_rng(3).random(20)

    split = split_dataset(dataset, 0.5, 3)

    assert [s.col for s in split.train] == list(np.flatnonzero(draws < 0.5))


def test_sampling_and_splitting_use_separate_streams():
    sample_seed, split_seed = stream_seeds(42)
    again = stream_seeds(42)

    assert np.array_equal(sample_seed.generate_state(4), again[0].generate_state(4))
    assert np.array_equal(split_seed.generate_state(4), again[1].generate_state(4))

    sample_draws = np.random.default_rng(sample_seed).random(8)
    split_draws = np.random.default_rng(split_seed).random(8)
    assert not np.array_equal(sample_draws, split_draws)
    assert not np.array_equal(split_draws, np.random.default_rng(42).random(8))

    dataset = make_dataset(np.arange(20), np.arange(20), ['feature'])
    first = split_dataset(dataset, 0.5, split_seed)
    second = split_dataset(dataset, 0.5, stream_seeds(42)[1])
    assert [s.col for s in first.train] == [s.col for s in second.train]


def test_split_fraction_bounds():
    dataset = make_dataset(np.arange(10), np.arange(10), ['feature'])

    assert len(split_dataset(dataset, 1.0, 0).train) == 10
    with pytest.raises(ValueError):
        split_dataset(dataset, 0.0, 0)
    with pytest.raises(ValueError):
        split_dataset(dataset, 1.5, 0)


def test_dataset_rejects_duplicate_locations():
    sample = Sample(x=0.0, y=0.0, row=1, col=1, features=(1.0,), label=2.0)

    with pytest.raises(ValueError):
        Dataset(FeatureSchema(('feature',)), 'label', (sample, sample))


def test_dataset_to_dataframe():
    dataset = make_dataset([[1.0, 2.0], [3.0, 4.0]], [10.0, 20.0], ['a', 'b'])
    frame = dataset.to_dataframe()

    assert isinstance(frame, pd.DataFrame)
    assert list(frame.columns) == ['x', 'y', 'row', 'col', 'a', 'b', 'carbon_tonnes_per_ha']
    assert frame['b'].tolist() == [2.0, 4.0]
