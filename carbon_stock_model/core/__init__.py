"""
Core carbon stock estimation modules.

This package contains the core processing logic for carbon stock estimation:
- CarbonStockPipeline: Main processing pipeline
- RegionResolver: Study region lookup from administrative boundaries
- FeatureCompositor: Temporal composites, indices, texture and terrain
- CoverMaskBuilder: Land cover masking
- Sampler / split_dataset: Training sample extraction
- RegressionTrainer: Ensemble and robust linear models
- Predictor / Validator: Spatial inference and accuracy assessment
- IO utilities: GeoTIFF sources and export

Author: Diego Bengochea
"""

from .carbon_stock_pipeline import CarbonStockPipeline, PipelineResult
from .cover_mask import CoverMaskBuilder, apply_cover_mask, temporal_mode
from .exceptions import (
    CarbonStockError,
    DegenerateFit,
    ExportError,
    InsufficientData,
    NoOverlap,
    NoRegionFound,
    NoScenesAvailable,
    RetrievalCancelled,
    RetrievalTimeout,
    SchemaMismatch
)
from .feature_compositing import FeatureCompositor
from .io_utils import (
    GeoTiffCategoricalSource,
    GeoTiffExportSink,
    GeoTiffSceneSource,
    GeoTiffTerrainSource,
    match_grid,
    read_raster,
    write_raster
)
from .prediction import Predictor
from .raster import NODATA_VALUE, FeatureSchema, Raster
from .region import GeoDataFrameBoundarySource, RegionResolver
from .regression import CarbonModel, EnsembleRegressionModel, RegressionTrainer, RobustLinearModel
from .sampling import Dataset, Sample, Sampler, Split, split_dataset
from .sources import (
    DateRange,
    InMemoryCategoricalSource,
    InMemorySceneSource,
    InMemoryTerrainSource,
    RetrievalGuard,
    Scene
)
from .validation import ValidationResult, Validator, rmse

__all__ = [
    # Pipeline
    "CarbonStockPipeline",
    "PipelineResult",
    # Data model
    "Raster",
    "FeatureSchema",
    "NODATA_VALUE",
    "Sample",
    "Dataset",
    "Split",
    "DateRange",
    "Scene",
    # Stages
    "RegionResolver",
    "FeatureCompositor",
    "CoverMaskBuilder",
    "apply_cover_mask",
    "temporal_mode",
    "Sampler",
    "split_dataset",
    "RegressionTrainer",
    "CarbonModel",
    "EnsembleRegressionModel",
    "RobustLinearModel",
    "Predictor",
    "Validator",
    "ValidationResult",
    "rmse",
    # Sources and I/O
    "RetrievalGuard",
    "GeoDataFrameBoundarySource",
    "InMemorySceneSource",
    "InMemoryCategoricalSource",
    "InMemoryTerrainSource",
    "GeoTiffSceneSource",
    "GeoTiffCategoricalSource",
    "GeoTiffTerrainSource",
    "GeoTiffExportSink",
    "read_raster",
    "write_raster",
    "match_grid",
    # Errors
    "CarbonStockError",
    "NoRegionFound",
    "NoScenesAvailable",
    "RetrievalTimeout",
    "RetrievalCancelled",
    "InsufficientData",
    "DegenerateFit",
    "NoOverlap",
    "SchemaMismatch",
    "ExportError"
]
