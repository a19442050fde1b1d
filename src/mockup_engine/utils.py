"""
Shared helper functions and utilities.

Logging setup and the configuration layer used by the importer, the
renderer and the command-line tool.
"""

import copy
import json
import logging
import os
from pathlib import Path

LOGGER = logging.getLogger(__name__)

BACKENDS = ("homography", "subdivision")
INTERPOLATIONS = ("nearest", "linear", "cubic")
FORMATS = ("png", "jpeg", "jpg", "webp")

DEFAULT_CONFIG = {
    # Layered-scene import
    'importer': {
        'extract_raster_snapshots': True,
        'include_composite': True,  # Flattened document under "__composite__"
    },

    # Compositing
    'renderer': {
        'backend': 'homography',  # 'homography' (exact, cv2.warpPerspective) or 'subdivision'
        'subdivisions': 8,  # Grid size for the subdivision backend
        'use_opencl': False,
        'antialias_clip': True,
        'interpolation': 'linear',  # 'nearest', 'linear', 'cubic'
        'preload_workers': 4,
        'cache_size': 64,  # Decoded images kept per renderer
    },

    # Output encoding
    'export': {
        'format': 'png',
        'quality': 0.92,  # JPEG/WEBP quality in [0, 1]
    },
}


def setup_logging(level=logging.INFO):
    """Set up logging configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    LOGGER.debug("Logging initialized")


def merge_config(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Args:
        config_path: Path to a JSON configuration file (optional)

    Returns:
        dict: Configuration dictionary with 'importer', 'renderer' and
        'export' sections
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
            config = merge_config(config, loaded_config)
            LOGGER.info("Configuration loaded from %s", config_path)
        except (OSError, json.JSONDecodeError) as e:
            LOGGER.warning("Failed to load config from %s: %s", config_path, e)
    elif config_path:
        LOGGER.warning("Config file %s not found, using defaults", config_path)

    return config


def save_config(config, config_path):
    """Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file

    Returns:
        bool: True if save successful, False otherwise
    """
    try:
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=4)
        LOGGER.info("Configuration saved to %s", config_path)
        return True
    except (OSError, TypeError) as e:
        LOGGER.error("Failed to save config to %s: %s", config_path, e)
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    for section in ('importer', 'renderer', 'export'):
        if not isinstance(config.get(section), dict):
            LOGGER.error("Missing required config section: %s", section)
            return False

    renderer = config['renderer']
    if renderer.get('backend') not in BACKENDS:
        LOGGER.error("Unknown renderer backend: %s", renderer.get('backend'))
        return False
    if renderer.get('interpolation', 'linear') not in INTERPOLATIONS:
        LOGGER.error("Unknown interpolation: %s", renderer.get('interpolation'))
        return False
    if int(renderer.get('subdivisions', 8)) < 1:
        LOGGER.error("Subdivisions must be at least 1")
        return False
    if int(renderer.get('cache_size', 64)) < 1 or int(renderer.get('preload_workers', 4)) < 1:
        LOGGER.error("Cache size and preload workers must be positive")
        return False

    export = config['export']
    if str(export.get('format', 'png')).lower() not in FORMATS:
        LOGGER.error("Unknown export format: %s", export.get('format'))
        return False
    if not 0.0 <= float(export.get('quality', 0.92)) <= 1.0:
        LOGGER.error("Export quality must be within [0, 1]")
        return False

    LOGGER.info("Configuration validated successfully")
    return True
