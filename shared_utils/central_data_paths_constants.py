"""
Central Data Paths - Constants

Centralized path management for the Carbon Stock Estimation repository.
All components should import paths from this module instead of defining their own.

Usage:
    from shared_utils.central_data_paths_constants import SCENES_DIR, CARBON_ESTIMATES_DIR

    scene_files = list(SCENES_DIR.glob("*.tif"))

Author: Diego Bengochea
"""

from pathlib import Path

# Root directories
DATA_ROOT = Path("data")

RAW_DIR = DATA_ROOT / "raw"
PROCESSED_DIR = DATA_ROOT / "processed"
RESULTS_DIR = DATA_ROOT / "results"

# Administrative boundaries
BOUNDARIES_DIR = RAW_DIR / "boundaries"
BOUNDARIES_FILE = BOUNDARIES_DIR / "admin_level1.gpkg"

# Optical scenes (one GeoTIFF per acquisition)
SCENES_DIR = RAW_DIR / "sentinel2_scenes"

# Categorical land cover (one GeoTIFF per period)
LAND_COVER_DIR = RAW_DIR / "land_cover"

# Elevation
ELEVATION_DIR = RAW_DIR / "elevation"
ELEVATION_FILE = ELEVATION_DIR / "elevation.tif"

# Reference carbon density
REFERENCE_CARBON_DIR = RAW_DIR / "reference_carbon"
REFERENCE_CARBON_FILE = REFERENCE_CARBON_DIR / "carbon_density.tif"

# Training samples
SAMPLES_DIR = PROCESSED_DIR / "samples"
SAMPLES_FILE = SAMPLES_DIR / "carbon_samples.csv"

# Estimated carbon stock maps
CARBON_ESTIMATES_DIR = RESULTS_DIR / "carbon_estimates"


def create_all_directories():
    """Create all necessary directories in the data structure."""
    directories = [
        BOUNDARIES_DIR,
        SCENES_DIR,
        LAND_COVER_DIR,
        ELEVATION_DIR,
        REFERENCE_CARBON_DIR,
        SAMPLES_DIR,
        CARBON_ESTIMATES_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)
