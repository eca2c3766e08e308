#!/usr/bin/env python3
"""
Carbon Stock Estimation Pipeline Script

Main entry point for estimating carbon stock from Sentinel-2 composites,
land cover and a reference carbon density raster.

Usage:
    python run_carbon_stock_estimation.py [OPTIONS]

Examples:
    # Run full pipeline with default config and data layout
    python run_carbon_stock_estimation.py

    # Robust linear model instead of the tree ensemble
    python run_carbon_stock_estimation.py --variant linear

    # Different region and period
    python run_carbon_stock_estimation.py --lon 80.7 --lat 7.3 --start 2021-01-01 --end 2022-01-01

    # Custom inputs and outputs
    python run_carbon_stock_estimation.py --scenes-dir ./scenes --reference ./carbon.tif --output-dir ./out

Author: Diego Bengochea
"""

import argparse
import sys
import time
from pathlib import Path
from typing import Any, Dict

from carbon_stock_model.core.carbon_stock_pipeline import CarbonStockPipeline
from carbon_stock_model.core.exceptions import CarbonStockError
from carbon_stock_model.core.io_utils import GeoTiffCategoricalSource, GeoTiffSceneSource, GeoTiffTerrainSource
from carbon_stock_model.core.region import GeoDataFrameBoundarySource
from shared_utils import load_config


def parse_arguments(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Carbon Stock Estimation from Sentinel-2 imagery",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                   # Run with default settings
  %(prog)s --config custom.yaml             # Custom configuration
  %(prog)s --variant linear                 # Robust linear regression
  %(prog)s --n-samples 2000 --seed 7        # Sampling overrides
        """
    )

    # Core configuration
    parser.add_argument('--config', type=str, help='Path to configuration file')

    # Region and period
    parser.add_argument('--lon', type=float, help='Longitude of the region point (overrides config)')
    parser.add_argument('--lat', type=float, help='Latitude of the region point (overrides config)')
    parser.add_argument('--start', type=str, help='Period start date, YYYY-MM-DD (overrides config)')
    parser.add_argument('--end', type=str, help='Period end date, exclusive, YYYY-MM-DD (overrides config)')
    parser.add_argument('--cloud-threshold', type=float, help='Scene cloud percentage threshold (overrides config)')

    # Sampling and training
    parser.add_argument('--n-samples', type=int, help='Number of training samples (overrides config)')
    parser.add_argument('--seed', type=int, help='Random seed for sampling, splitting and bagging (overrides config)')
    parser.add_argument('--train-fraction', type=float, help='Training fraction of the samples (overrides config)')
    parser.add_argument('--variant', choices=['ensemble', 'linear'], help='Regression model variant (overrides config)')
    parser.add_argument('--n-trees', type=int, help='Number of trees in the ensemble (overrides config)')
    parser.add_argument('--bag-fraction', type=float, help='Bootstrap fraction per tree (overrides config)')

    # Input data
    parser.add_argument('--boundaries', type=str, help='Administrative boundaries vector file')
    parser.add_argument('--scenes-dir', type=str, help='Directory of Sentinel-2 scene GeoTIFFs')
    parser.add_argument('--land-cover-dir', type=str, help='Directory of land cover GeoTIFFs')
    parser.add_argument('--elevation', type=str, help='Elevation GeoTIFF')
    parser.add_argument('--reference', type=str, help='Reference carbon density GeoTIFF')

    # Output
    parser.add_argument('--output-dir', type=str, help='Directory for exported rasters')
    parser.add_argument('--samples-file', type=str, help='CSV path for the sample table')
    parser.add_argument('--scale', type=float, help='Export pixel size in target CRS units (overrides config)')
    parser.add_argument('--crs', type=str, help='Export CRS (overrides config)')

    # Logging
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Logging level (overrides config)'
    )

    return parser.parse_args(argv)


def validate_arguments(args: argparse.Namespace) -> bool:
    """Validate command line arguments."""
    if args.config and not Path(args.config).exists():
        print(f"Error: Config file not found: {args.config}")
        return False

    if (args.lon is None) != (args.lat is None):
        print("Error: --lon and --lat must be given together")
        return False

    path_args = [
        ('boundaries', args.boundaries),
        ('scenes-dir', args.scenes_dir),
        ('land-cover-dir', args.land_cover_dir),
        ('elevation', args.elevation),
        ('reference', args.reference),
    ]
    for arg_name, arg_value in path_args:
        if arg_value and not Path(arg_value).exists():
            print(f"Error: {arg_name} not found: {arg_value}")
            return False

    return True


def apply_overrides(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """Apply command line overrides to a loaded configuration."""
    if args.lon is not None:
        config['region']['point'] = [args.lon, args.lat]
    if args.start:
        config['period']['start'] = args.start
    if args.end:
        config['period']['end'] = args.end
    if args.cloud_threshold is not None:
        config['compositing']['cloud_threshold'] = args.cloud_threshold

    if args.n_samples is not None:
        config['sampling']['n_samples'] = args.n_samples
    if args.seed is not None:
        config['sampling']['seed'] = args.seed
        config['training']['ensemble']['seed'] = args.seed
    if args.train_fraction is not None:
        config['sampling']['train_fraction'] = args.train_fraction
    if args.variant:
        config['training']['variant'] = args.variant
    if args.n_trees is not None:
        config['training']['ensemble']['n_trees'] = args.n_trees
    if args.bag_fraction is not None:
        config['training']['ensemble']['bag_fraction'] = args.bag_fraction

    if args.scale is not None:
        config['output']['scale'] = args.scale
    if args.crs:
        config['output']['crs'] = args.crs
    if args.log_level:
        config['logging']['level'] = args.log_level

    return config


def main(argv=None) -> bool:
    """Main entry point for the carbon stock estimation script."""
    start_time = time.time()
    args = parse_arguments(argv)

    if not validate_arguments(args):
        return False

    try:
        config = apply_overrides(load_config(args.config, component_name='carbon_stock_model'), args)

        include_terrain = config['compositing'].get('include_terrain', False)
        pipeline = CarbonStockPipeline(
            config=config,
            boundary_source=GeoDataFrameBoundarySource.from_file(args.boundaries) if args.boundaries else None,
            scene_source=GeoTiffSceneSource(args.scenes_dir) if args.scenes_dir else None,
            categorical_source=GeoTiffCategoricalSource(args.land_cover_dir) if args.land_cover_dir else None,
            terrain_source=GeoTiffTerrainSource(args.elevation) if args.elevation and include_terrain else None,
            reference=args.reference,
            output_dir=args.output_dir,
            samples_file=args.samples_file,
        )

        result = pipeline.run()

    except KeyboardInterrupt:
        print("\nCarbon stock estimation interrupted by user")
        return False
    except CarbonStockError as e:
        print(f"Carbon stock estimation failed at stage '{e.stage}': {e}")
        return False
    except Exception as e:
        print(f"Carbon stock estimation failed: {e}")
        return False

    elapsed = time.time() - start_time
    print(f"Held-out RMSE: {result.test_validation.rmse:.4f} ({result.test_validation.n_samples} samples)")
    if result.raster_validation is not None:
        print(f"Region RMSE: {result.raster_validation.rmse:.4f} ({result.raster_validation.n_samples} pixels)")
    for name, path in result.exports.items():
        print(f"{name}: {path}")
    print(f"Completed in {elapsed:.1f}s")
    return True


def cli() -> None:
    """Console script entry point."""
    sys.exit(0 if main() else 1)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
