"""
Carbon Stock Estimation Component

This component estimates above-ground carbon stock from optical satellite
imagery, including:

- Cloud-robust Sentinel-2 temporal composites
- Vegetation index, texture and terrain features
- Land cover masking from categorical time series
- Bagged regression tree and robust linear models
- Held-out and region-wide accuracy assessment

Components:
    core/: Core processing modules
    scripts/: Executable entry points
    config.yaml: Component configuration

Author: Diego Bengochea
"""

from .core.carbon_stock_pipeline import CarbonStockPipeline, PipelineResult
from .core.feature_compositing import FeatureCompositor
from .core.regression import RegressionTrainer

__version__ = "1.0.0"
__component__ = "carbon_stock_model"

__all__ = [
    "CarbonStockPipeline",
    "PipelineResult",
    "FeatureCompositor",
    "RegressionTrainer"
]
