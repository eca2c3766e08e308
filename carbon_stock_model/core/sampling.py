"""
Training sample extraction and train/test splitting.

Samples are drawn from a lattice at the sampling scale (pixel blocks of
``scale / pixel_size`` on a side, represented by their centre pixel), keeping
only locations where every feature band and the label are valid. Draws and
splits are reproducible from an integer seed; the pipeline gives each its own
stream through ``stream_seeds``.

Author: Diego Bengochea
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterator, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from shared_utils import get_logger

from .raster import FeatureSchema, Raster

Seed = Union[int, np.random.SeedSequence]


def stream_seeds(seed: int) -> Tuple[np.random.SeedSequence, np.random.SeedSequence]:
    """Independent (sampling, splitting) seed sequences derived from one run seed."""
    sample_seed, split_seed = np.random.SeedSequence(seed).spawn(2)
    return sample_seed, split_seed


@dataclass(frozen=True)
class Sample:
    """One labelled location: map coordinates, pixel indices, feature vector and label."""

    x: float
    y: float
    row: int
    col: int
    features: Tuple[float, ...]
    label: float


@dataclass(frozen=True)
class Dataset:
    """Ordered collection of samples sharing a feature schema."""

    schema: FeatureSchema
    label_name: str
    samples: Tuple[Sample, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'samples', tuple(self.samples))
        locations = [(s.row, s.col) for s in self.samples]
        if len(set(locations)) != len(locations):
            raise ValueError("Dataset contains duplicate pixel locations")
        for s in self.samples:
            if len(s.features) != len(self.schema):
                raise ValueError(
                    f"Sample at ({s.row}, {s.col}) has {len(s.features)} features, "
                    f"schema has {len(self.schema)}"
                )

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.samples)

    def feature_matrix(self) -> np.ndarray:
        if not self.samples:
            return np.zeros((0, len(self.schema)))
        return np.array([s.features for s in self.samples], dtype=np.float64)

    def labels(self) -> np.ndarray:
        return np.array([s.label for s in self.samples], dtype=np.float64)

    def subset(self, indices: Sequence[int]) -> 'Dataset':
        return Dataset(self.schema, self.label_name, tuple(self.samples[i] for i in indices))

    def to_dataframe(self) -> pd.DataFrame:
        columns = ['x', 'y', 'row', 'col'] + list(self.schema.bands) + [self.label_name]
        records = [
            (s.x, s.y, s.row, s.col) + tuple(s.features) + (s.label,)
            for s in self.samples
        ]
        return pd.DataFrame.from_records(records, columns=columns)


@dataclass(frozen=True)
class Split:
    train: Dataset
    test: Dataset


class Sampler:
    """Draw labelled samples from a feature stack and a label raster."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = get_logger('sampling')
        self.label_band = config['sampling']['label_band']

    def candidate_pixels(self, features: Raster, labels: Raster, scale: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Row-major (rows, cols) of lattice pixels valid in every band and in the label.

        The lattice stride is ``max(1, round(scale / pixel_size))``; each block
        is represented by its centre pixel.
        """
        pixel_size = min(features.resolution)
        stride = max(1, int(round(scale / pixel_size)))
        rows, cols = features.shape

        row_idx = np.arange(min(stride // 2, rows - 1), rows, stride)
        col_idx = np.arange(min(stride // 2, cols - 1), cols, stride)
        lattice = np.zeros((rows, cols), dtype=bool)
        lattice[np.ix_(row_idx, col_idx)] = True

        label_valid = labels.valid[labels.band_index(self.label_band)]
        qualifies = lattice & features.valid_all() & label_valid
        return np.nonzero(qualifies)

    def sample(self, features: Raster, labels: Raster, n: int, scale: float, seed: Seed) -> Dataset:
        """
        Draw up to ``n`` samples without replacement.

        Args:
            features: Feature stack
            labels: Raster holding the label band, on the feature grid
            n: Requested number of samples
            scale: Sampling scale in CRS units
            seed: Integer seed or SeedSequence

        Returns:
            Dataset: Samples in row-major raster order
        """
        if n <= 0:
            raise ValueError(f"Number of samples must be positive, got {n}")
        if not features.same_grid(labels):
            raise ValueError("Feature and label rasters must share grid geometry")

        rows, cols = self.candidate_pixels(features, labels, scale)
        n_candidates = len(rows)

        if n_candidates > n:
            rng = np.random.default_rng(seed)
            chosen = np.sort(rng.choice(n_candidates, size=n, replace=False))
            rows, cols = rows[chosen], cols[chosen]
        elif n_candidates < n:
            self.logger.warning(
                f"Only {n_candidates} valid candidate pixels for {n} requested samples; using all"
            )

        label_idx = labels.band_index(self.label_band)
        xs, ys = features.pixel_centers(rows, cols)
        samples = tuple(
            Sample(
                x=float(x), y=float(y), row=int(r), col=int(c),
                features=tuple(float(v) for v in features.values[:, r, c]),
                label=float(labels.values[label_idx, r, c]),
            )
            for x, y, r, c in zip(xs, ys, rows, cols)
        )

        self.logger.info(f"Sampled {len(samples)} pixels at scale {scale}")
        return Dataset(FeatureSchema(features.bands), self.label_band, samples)


def split_dataset(dataset: Dataset, train_fraction: float, seed: Seed) -> Split:
    """
    Random per-sample split.

    Each sample, in dataset order, draws a uniform value from
    ``default_rng(seed)``; values below ``train_fraction`` go to the
    training set.
    """
    if not 0 < train_fraction <= 1:
        raise ValueError(f"Train fraction must lie in (0, 1], got {train_fraction}")

    draws = np.random.default_rng(seed).random(len(dataset))
    in_train = draws < train_fraction
    train_idx = np.flatnonzero(in_train)
    test_idx = np.flatnonzero(~in_train)

    get_logger('sampling').info(f"Split {len(dataset)} samples: {len(train_idx)} train, {len(test_idx)} test")
    return Split(dataset.subset(train_idx), dataset.subset(test_idx))
