"""
Main execution pipeline for carbon stock estimation.

This module orchestrates the complete workflow:
- Resolving the study region from a lon/lat point
- Compositing spectral, index, texture and terrain features
- Masking to the target land cover class
- Sampling the reference carbon density and splitting train/test
- Training the configured regression model
- Predicting carbon density over the region
- Validating on the held-out set and against the reference raster
- Exporting the estimate, the reference and the sample table

Every stage fails fast. A failure is tagged with the stage name and its
inputs, logged and re-raised; nothing is exported from a failed run.

Author: Diego Bengochea
"""

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from shapely.geometry.base import BaseGeometry

from shared_utils import (
    ensure_directory,
    get_config_value,
    load_config,
    log_pipeline_end,
    log_pipeline_start,
    log_section,
    log_stage_failure,
    save_config,
    setup_logging,
    validate_config,
)
from shared_utils.central_data_paths_constants import (
    BOUNDARIES_FILE,
    CARBON_ESTIMATES_DIR,
    ELEVATION_FILE,
    LAND_COVER_DIR,
    REFERENCE_CARBON_FILE,
    SAMPLES_FILE,
    SCENES_DIR,
)

from .cover_mask import CoverMaskBuilder, apply_cover_mask
from .exceptions import CarbonStockError, ExportError
from .feature_compositing import FeatureCompositor
from .io_utils import (
    GeoTiffCategoricalSource,
    GeoTiffExportSink,
    GeoTiffSceneSource,
    GeoTiffTerrainSource,
    match_grid,
    read_raster,
)
from .prediction import Predictor
from .raster import REGION_CRS, Raster
from .region import GeoDataFrameBoundarySource, RegionResolver
from .regression import CarbonModel, RegressionTrainer
from .sampling import Dataset, Sampler, Split, split_dataset, stream_seeds
from .sources import (
    BoundarySource,
    CategoricalSource,
    DateRange,
    ExportSink,
    RetrievalGuard,
    SceneSource,
    TerrainSource,
)
from .validation import ValidationResult, Validator

PIPELINE_NAME = 'Carbon Stock Estimation'
REQUIRED_SECTIONS = [
    'region', 'period', 'compositing', 'cover_mask', 'sampling',
    'training', 'prediction', 'compute', 'output',
]


@dataclass(frozen=True, eq=False)
class PipelineResult:
    """Artifacts of a successful run."""

    region: BaseGeometry
    features: Raster
    dataset: Dataset
    split: Split
    model: CarbonModel
    prediction: Raster
    reference: Raster
    test_validation: ValidationResult
    raster_validation: Optional[ValidationResult] = None
    exports: Dict[str, Path] = field(default_factory=dict)


class CarbonStockPipeline:
    """
    End-to-end carbon stock estimation from optical imagery.

    Data sources default to the GeoTIFF and vector layouts under the central
    data paths; any of them can be replaced by passing an object with the
    same interface.
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        config: Optional[Dict[str, Any]] = None,
        boundary_source: Optional[BoundarySource] = None,
        scene_source: Optional[SceneSource] = None,
        categorical_source: Optional[CategoricalSource] = None,
        terrain_source: Optional[TerrainSource] = None,
        reference: Optional[Union[Raster, str, Path]] = None,
        export_sink: Optional[ExportSink] = None,
        output_dir: Optional[Union[str, Path]] = None,
        samples_file: Optional[Union[str, Path]] = None
    ):
        """
        Initialize the carbon stock pipeline.

        Args:
            config_path: Path to a YAML configuration file
            config: Configuration dictionary, used instead of loading a file
            boundary_source: Administrative boundaries (default: BOUNDARIES_FILE)
            scene_source: Optical scenes (default: GeoTIFFs in SCENES_DIR)
            categorical_source: Land cover periods (default: GeoTIFFs in LAND_COVER_DIR)
            terrain_source: Elevation (default: ELEVATION_FILE)
            reference: Reference carbon density raster or its path (default: REFERENCE_CARBON_FILE)
            export_sink: Raster writer (default: GeoTIFF through rioxarray)
            output_dir: Export directory (default: CARBON_ESTIMATES_DIR)
            samples_file: Sample table CSV path (default: SAMPLES_FILE)
        """
        self.config = config if config is not None else load_config(config_path, component_name='carbon_stock_model')

        self.logger = setup_logging(
            level=self.config.get('logging', {}).get('level', 'INFO'),
            component_name='carbon_stock_pipeline',
            log_file=self.config.get('logging', {}).get('log_file')
        )

        validate_config(self.config, REQUIRED_SECTIONS)

        self.boundary_source = boundary_source
        self.scene_source = scene_source or GeoTiffSceneSource(SCENES_DIR)
        self.categorical_source = categorical_source or GeoTiffCategoricalSource(LAND_COVER_DIR)
        self.terrain_source = terrain_source
        if self.terrain_source is None and self.config['compositing'].get('include_terrain', False):
            self.terrain_source = GeoTiffTerrainSource(ELEVATION_FILE)
        self.reference = reference if reference is not None else REFERENCE_CARBON_FILE
        self.export_sink = export_sink or GeoTiffExportSink()
        self.output_dir = Path(output_dir) if output_dir is not None else CARBON_ESTIMATES_DIR
        self.samples_file = Path(samples_file) if samples_file is not None else SAMPLES_FILE

        self.logger.info("Initialized CarbonStockPipeline")

    def _stage(self, name: str, func: Callable[..., Any], *args, inputs: Optional[Dict[str, Any]] = None) -> Any:
        """Run one stage, tagging any pipeline error with the stage name and inputs."""
        log_section(self.logger, name.replace('_', ' ').title())
        try:
            return func(*args)
        except CarbonStockError as e:
            e.stage = name
            for key, value in (inputs or {}).items():
                e.context.setdefault(key, value)
            log_stage_failure(self.logger, name, e, e.context)
            raise
        except Exception as e:
            log_stage_failure(self.logger, name, e, inputs)
            raise

    def _boundaries(self) -> BoundarySource:
        if self.boundary_source is None:
            self.boundary_source = GeoDataFrameBoundarySource.from_file(BOUNDARIES_FILE)
        return self.boundary_source

    def load_reference(self, like: Raster, region: Optional[BaseGeometry]) -> Raster:
        """Reference carbon density as the label band, on the feature grid, clipped to the region."""
        label_band = self.config['sampling']['label_band']

        reference = self.reference
        if not isinstance(reference, Raster):
            reference = read_raster(reference)

        if label_band in reference.bands:
            reference = reference.select([label_band])
        else:
            reference = reference.select([reference.bands[0]]).rename([label_band])

        reference = match_grid(reference, like)
        if region is not None and self.config['compositing'].get('clip_to_region', True):
            reference = reference.clip(region, REGION_CRS)
        return reference

    def export_results(self, prediction: Raster, reference: Raster, dataset: Dataset) -> Dict[str, Path]:
        """
        Write the estimate, optionally the reference, the sample table and the run config.

        Exports are all-or-nothing: if any write fails, files already written
        by this call are removed before the error propagates.

        Raises:
            ExportError: If any export fails
        """
        output = self.config['output']
        scale, crs, fmt = output.get('scale'), output.get('crs'), output.get('format', 'GeoTIFF')

        exports: Dict[str, Path] = {}
        pending: Optional[Path] = None
        try:
            exports['prediction'] = Path(self.export_sink.write(
                prediction, str(self.output_dir / output.get('prediction_name', 'Estimated_Carbon_Stock')),
                scale, crs, fmt
            ))
            if output.get('export_reference', True):
                exports['reference'] = Path(self.export_sink.write(
                    reference, str(self.output_dir / output.get('reference_name', 'Reference_Carbon_Stock')),
                    scale, crs, fmt
                ))
            if output.get('save_samples', False):
                pending = self.samples_file
                ensure_directory(self.samples_file.parent)
                dataset.to_dataframe().to_csv(self.samples_file, index=False)
                exports['samples'], pending = self.samples_file, None
            if output.get('save_config', True):
                pending = self.output_dir / 'run_config.yaml'
                save_config(self.config, pending)
                exports['config'], pending = pending, None
        except ExportError:
            self._discard(list(exports.values()) + [pending])
            raise
        except OSError as e:
            self._discard(list(exports.values()) + [pending])
            raise ExportError(f"Export failed: {e}", context={'path': str(pending)}) from e

        for name, path in exports.items():
            self.logger.info(f"Exported {name}: {path}")
        return exports

    def _discard(self, paths) -> None:
        """Remove files written by a failed export."""
        for path in paths:
            if path is not None and Path(path).is_file():
                Path(path).unlink()
                self.logger.warning(f"Removed partial export: {path}")

    def run(self, cancel_token: Optional[threading.Event] = None) -> PipelineResult:
        """
        Execute the complete pipeline.

        Args:
            cancel_token: Event that, once set, stops the run at the next retrieval

        Returns:
            PipelineResult: All intermediate and final artifacts

        Raises:
            CarbonStockError: Tagged with the failing stage
        """
        start_time = time.time()
        log_pipeline_start(self.logger, PIPELINE_NAME, self.config)

        cfg = self.config
        comp = cfg['compositing']
        sampling = cfg['sampling']

        guard = RetrievalGuard(get_config_value(cfg, 'retrieval.timeout_seconds'), cancel_token)
        lon, lat = cfg['region']['point']
        date_range = DateRange.parse(cfg['period']['start'], cfg['period']['end'])
        bands = comp['bands']
        sample_seed, split_seed = stream_seeds(sampling['seed'])

        try:
            region = self._stage(
                'resolve_region', lambda: RegionResolver(self._boundaries(), guard).resolve(lon, lat),
                inputs={'point': (lon, lat)}
            )

            compositor = FeatureCompositor(cfg, self.scene_source, self.terrain_source, guard)
            features = self._stage(
                'composite', compositor.composite, region, date_range, comp['cloud_threshold'], bands,
                inputs={'date_range': (date_range.start, date_range.end),
                        'cloud_threshold': comp['cloud_threshold'], 'bands': tuple(bands)}
            )

            mask = self._stage(
                'cover_mask', CoverMaskBuilder(self.categorical_source, guard).build,
                region, date_range, cfg['cover_mask']['target_class'], features,
                inputs={'target_class': cfg['cover_mask']['target_class']}
            )
            masked = apply_cover_mask(features, mask)

            reference = self._stage('load_reference', self.load_reference, features, region)

            dataset = self._stage(
                'sample', Sampler(cfg).sample, masked, reference,
                sampling['n_samples'], sampling['scale'], sample_seed,
                inputs={'n_samples': sampling['n_samples'], 'scale': sampling['scale'], 'seed': sampling['seed']}
            )

            split = self._stage(
                'split', split_dataset, dataset, sampling['train_fraction'], split_seed,
                inputs={'n_samples': len(dataset), 'train_fraction': sampling['train_fraction'],
                        'seed': sampling['seed']}
            )

            model = self._stage(
                'train', RegressionTrainer(cfg).train, split.train, compositor.schema_for(bands),
                inputs={'variant': cfg['training']['variant'], 'n_train': len(split.train)}
            )

            prediction = self._stage('predict', Predictor(cfg).predict, model, masked)

            validator = Validator(cfg)
            test_validation = self._stage(
                'validate', validator.validate_dataset, model, split.test,
                inputs={'n_test': len(split.test)}
            )
            raster_validation = None
            if get_config_value(cfg, 'validation.compare_rasters', True):
                raster_validation = self._stage('validate', validator.validate_rasters, prediction, reference)

            exports = self._stage('export', self.export_results, prediction, reference, dataset,
                                  inputs={'output_dir': str(self.output_dir)})

        except Exception:
            log_pipeline_end(self.logger, PIPELINE_NAME, success=False, elapsed_time=time.time() - start_time)
            raise

        self.logger.info(f"Held-out RMSE: {test_validation.rmse:.4f} ({test_validation.n_samples} samples)")
        if raster_validation is not None:
            self.logger.info(f"Region RMSE: {raster_validation.rmse:.4f} ({raster_validation.n_samples} pixels)")
        log_pipeline_end(self.logger, PIPELINE_NAME, success=True, elapsed_time=time.time() - start_time)

        return PipelineResult(
            region=region,
            features=features,
            dataset=dataset,
            split=split,
            model=model,
            prediction=prediction,
            reference=reference,
            test_validation=test_validation,
            raster_validation=raster_validation,
            exports=exports,
        )
