"""
Standardized logging utilities for the Carbon Stock Estimation Pipeline.

All component loggers live under the ``carbon_stock`` namespace. Geospatial
libraries that log every file open (rasterio, pyogrio, fiona) are kept at
WARNING unless the pipeline itself runs at DEBUG.

Author: Diego Bengochea
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config_utils import get_config_value

LOGGER_NAMESPACE = 'carbon_stock'

QUIET_LOGGERS = ('rasterio', 'pyogrio', 'fiona')

LOG_FORMATS = {
    'standard': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'detailed': '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s',
    'simple': '%(levelname)s: %(message)s'
}

# Run parameters echoed at pipeline start, as (label, dotted config key)
RUN_SUMMARY_KEYS = [
    ('Region point', 'region.point'),
    ('Period', 'period'),
    ('Cloud threshold', 'compositing.cloud_threshold'),
    ('Target class', 'cover_mask.target_class'),
    ('Samples', 'sampling.n_samples'),
    ('Seed', 'sampling.seed'),
    ('Model variant', 'training.variant'),
]


def setup_logging(
    level: Union[str, int] = 'INFO',
    component_name: Optional[str] = None,
    log_file: Optional[Union[str, Path]] = None,
    format_style: str = 'standard'
) -> logging.Logger:
    """
    Setup standardized logging configuration for pipeline components.

    Replaces any handlers already on the root logger, so repeated pipeline
    runs in one process do not duplicate output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        component_name: Name of the component (for logger identification)
        log_file: Optional file path for logging output
        format_style: Logging format style ('standard', 'detailed', 'simple')

    Returns:
        logging.Logger: Configured logger instance

    Examples:
        >>> logger = setup_logging('INFO', 'carbon_stock_pipeline')
        >>> logger = setup_logging('DEBUG', 'regression', 'training.log')
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        LOG_FORMATS.get(format_style, LOG_FORMATS['standard']),
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)

    return get_logger(component_name) if component_name else logging.getLogger(LOGGER_NAMESPACE)


def get_logger(component_name: str) -> logging.Logger:
    """
    Get a logger for a specific component.

    Examples:
        >>> logger = get_logger('sampling')
    """
    return logging.getLogger(f'{LOGGER_NAMESPACE}.{component_name}')


def log_pipeline_start(logger: logging.Logger, pipeline_name: str, config: Optional[Dict[str, Any]] = None) -> None:
    """
    Log standardized pipeline start message.

    Args:
        logger: Logger instance
        pipeline_name: Name of the pipeline being started
        config: Optional configuration; the main run parameters are echoed
    """
    logger.info("=" * 80)
    logger.info(f"STARTING PIPELINE: {pipeline_name.upper()}")
    logger.info("=" * 80)

    if not config:
        return

    logger.info("Run parameters:")
    for label, key_path in RUN_SUMMARY_KEYS:
        value = get_config_value(config, key_path)
        if isinstance(value, dict) and 'start' in value:
            value = f"{value['start']} to {value.get('end')} (end exclusive)"
        if value is not None:
            logger.info(f"  {label}: {value}")

    source = get_config_value(config, '_meta.config_file')
    if source:
        logger.info(f"  Configuration file: {source}")


def log_pipeline_end(logger: logging.Logger, pipeline_name: str, success: bool = True,
                     elapsed_time: Optional[float] = None) -> None:
    """
    Log standardized pipeline completion message.

    Args:
        logger: Logger instance
        pipeline_name: Name of the completed pipeline
        success: Whether pipeline completed successfully
        elapsed_time: Optional elapsed time in seconds
    """
    logger.info("=" * 80)

    if success:
        logger.info(f"PIPELINE COMPLETED SUCCESSFULLY: {pipeline_name.upper()}")
    else:
        logger.error(f"PIPELINE FAILED: {pipeline_name.upper()}")

    if elapsed_time:
        hours = int(elapsed_time // 3600)
        minutes = int((elapsed_time % 3600) // 60)
        seconds = int(elapsed_time % 60)
        logger.info(f"Total execution time: {hours:02d}:{minutes:02d}:{seconds:02d}")

    logger.info("=" * 80)


def log_section(logger: logging.Logger, section_name: str) -> None:
    """Log a standardized section header."""
    logger.info(f"\n{'='*20} {section_name.upper()} {'='*20}")


def log_stage_failure(logger: logging.Logger, stage: str, error: BaseException,
                      inputs: Optional[Dict[str, Any]] = None) -> None:
    """
    Log a failed pipeline stage with its error type and the inputs it was given.

    Args:
        logger: Logger instance
        stage: Stage name
        error: Raised exception
        inputs: Stage inputs worth reporting
    """
    logger.error(f"Stage '{stage}' failed with {type(error).__name__}: {error}")
    for key, value in (inputs or {}).items():
        logger.error(f"  {key}: {value}")
