"""
Regression models relating spectral features to carbon density.

Two model variants share the CarbonModel interface:

- EnsembleRegressionModel: bagged regression trees. Each tree is fitted on a
  bootstrap draw of the training set; prediction is the unweighted mean of
  the trees. Trees are built concurrently with dask.delayed, and each tree's
  randomness comes from its own child of a single SeedSequence, so the
  fitted ensemble does not depend on scheduling order.
- RobustLinearModel: intercept plus coefficients fitted by iteratively
  reweighted least squares with Tukey's biweight (statsmodels RLM).

Author: Diego Bengochea
"""

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Sequence, Tuple

import dask
import numpy as np
import statsmodels.api as sm
from statsmodels.robust.norms import TukeyBiweight
from statsmodels.robust.scale import mad
from sklearn.tree import DecisionTreeRegressor

from shared_utils import get_logger

from .exceptions import DegenerateFit, InsufficientData, SchemaMismatch
from .raster import FeatureSchema
from .sampling import Dataset

VARIANTS = ('ensemble', 'linear')


class CarbonModel(ABC):
    """Trained model mapping a feature matrix to carbon density."""

    variant: str = ''

    def __init__(self, schema: FeatureSchema, label_name: str):
        self.schema = schema
        self.label_name = label_name

    @abstractmethod
    def predict_matrix(self, features: np.ndarray) -> np.ndarray:
        """Predict one value per row of a (n_samples, n_features) matrix."""

    def _check_matrix(self, features: np.ndarray) -> np.ndarray:
        features = np.asarray(features, dtype=np.float64)
        if features.ndim != 2 or features.shape[1] != len(self.schema):
            raise SchemaMismatch(
                f"Expected a matrix with {len(self.schema)} columns, got shape {features.shape}",
                context={'expected': self.schema.bands},
            )
        return features


class EnsembleRegressionModel(CarbonModel):
    variant = 'ensemble'

    def __init__(self, schema: FeatureSchema, label_name: str, trees: Sequence[DecisionTreeRegressor]):
        super().__init__(schema, label_name)
        self.trees: Tuple[DecisionTreeRegressor, ...] = tuple(trees)

    @property
    def n_trees(self) -> int:
        return len(self.trees)

    def predict_matrix(self, features: np.ndarray) -> np.ndarray:
        features = self._check_matrix(features)
        if features.shape[0] == 0:
            return np.zeros(0)
        predictions = np.stack([tree.predict(features) for tree in self.trees])
        return predictions.mean(axis=0)


class RobustLinearModel(CarbonModel):
    variant = 'linear'

    def __init__(self, schema: FeatureSchema, label_name: str, intercept: float, coefficients: np.ndarray):
        super().__init__(schema, label_name)
        self.intercept = float(intercept)
        coefficients = np.array(coefficients, dtype=np.float64)
        coefficients.setflags(write=False)
        self.coefficients = coefficients

    def predict_matrix(self, features: np.ndarray) -> np.ndarray:
        features = self._check_matrix(features)
        return self.intercept + features @ self.coefficients


def _fit_tree(
    features: np.ndarray,
    labels: np.ndarray,
    seed_sequence: np.random.SeedSequence,
    bag_size: int,
    min_samples_leaf: int,
    max_features: Optional[Any]
) -> DecisionTreeRegressor:
    rng = np.random.default_rng(seed_sequence)
    bag = rng.integers(0, len(labels), size=bag_size)

    tree = DecisionTreeRegressor(
        criterion='squared_error',
        min_samples_leaf=min_samples_leaf,
        max_features=max_features,
        random_state=int(seed_sequence.generate_state(1)[0]),
    )
    tree.fit(features[bag], labels[bag])
    return tree


class RegressionTrainer:
    """Fit the configured model variant on a training dataset."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = get_logger('regression')

        training = config['training']
        self.variant = training.get('variant', 'ensemble')
        if self.variant not in VARIANTS:
            raise ValueError(f"Unknown model variant '{self.variant}', expected one of {VARIANTS}")

        ensemble = training.get('ensemble', {})
        self.n_trees = ensemble.get('n_trees', 100)
        self.bag_fraction = ensemble.get('bag_fraction', 0.7)
        self.seed = ensemble.get('seed', 42)
        self.min_samples_leaf = ensemble.get('min_samples_leaf', 1)
        self.max_features = ensemble.get('max_features')

        linear = training.get('linear', {})
        self.max_iterations = linear.get('max_iterations', 50)
        self.tolerance = linear.get('tolerance', 1e-8)

        self.num_workers = config.get('compute', {}).get('num_workers', 1)

        if self.n_trees < 1:
            raise ValueError(f"Number of trees must be positive, got {self.n_trees}")
        if not 0 < self.bag_fraction <= 1:
            raise ValueError(f"Bag fraction must lie in (0, 1], got {self.bag_fraction}")

    def train(self, train: Dataset, schema: Optional[FeatureSchema] = None) -> CarbonModel:
        """
        Fit a model on ``train``.

        Args:
            train: Training dataset
            schema: Expected feature schema; must equal the dataset schema when given

        Returns:
            CarbonModel: Fitted model carrying the dataset schema
        """
        if schema is not None and schema != train.schema:
            raise SchemaMismatch(
                f"Training data bands {train.schema.bands} do not match schema {schema.bands}",
                context={'expected': schema.bands, 'found': train.schema.bands},
            )

        self.logger.info(f"Training {self.variant} model on {len(train)} samples, {len(train.schema)} features")
        if self.variant == 'ensemble':
            return self.train_ensemble(train)
        return self.train_linear(train)

    def train_ensemble(self, train: Dataset) -> EnsembleRegressionModel:
        if len(train) < self.n_trees:
            raise InsufficientData(
                f"{len(train)} training samples for an ensemble of {self.n_trees} trees",
                context={'n_samples': len(train), 'n_trees': self.n_trees},
            )

        features = train.feature_matrix()
        labels = train.labels()
        bag_size = math.ceil(self.bag_fraction * len(train))
        children = np.random.SeedSequence(self.seed).spawn(self.n_trees)

        tasks = [
            dask.delayed(_fit_tree)(
                features, labels, child, bag_size, self.min_samples_leaf, self.max_features
            )
            for child in children
        ]
        trees = dask.compute(*tasks, scheduler='threads', num_workers=self.num_workers)

        self.logger.info(f"Fitted {len(trees)} trees on bags of {bag_size} samples")
        return EnsembleRegressionModel(train.schema, train.label_name, trees)

    def train_linear(self, train: Dataset) -> RobustLinearModel:
        n_features = len(train.schema)
        if len(train) < n_features + 1:
            raise InsufficientData(
                f"{len(train)} training samples for {n_features} features plus intercept",
                context={'n_samples': len(train), 'n_features': n_features},
            )

        labels = train.labels()
        design = sm.add_constant(train.feature_matrix(), has_constant='add')

        if np.linalg.matrix_rank(design) < design.shape[1]:
            raise DegenerateFit(
                "Design matrix is rank deficient",
                context={'n_samples': len(train), 'n_features': n_features},
            )

        ols = sm.OLS(labels, design).fit()
        residual_scale = mad(ols.resid, center=0.0)
        label_scale = max(1.0, float(np.abs(labels).max()))

        if residual_scale <= 1e-10 * label_scale:
            self.logger.info("Exact least squares fit; skipping robust reweighting")
            params = np.asarray(ols.params)
        else:
            rlm = sm.RLM(labels, design, M=TukeyBiweight())
            params = np.asarray(rlm.fit(maxiter=self.max_iterations, tol=self.tolerance).params)

        if not np.all(np.isfinite(params)):
            raise DegenerateFit(
                "Robust regression produced non-finite coefficients",
                context={'params': params.tolist()},
            )

        self.logger.info(f"Linear fit: intercept {params[0]:.4f}, coefficients {np.round(params[1:], 4).tolist()}")
        return RobustLinearModel(train.schema, train.label_name, params[0], params[1:])
