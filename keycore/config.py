"""
Configuration Management Module

This module provides a centralized way to load and access configuration settings
from the config.yaml file. Only one configuration instance is kept per process;
components receive plain dictionaries (one section each) so they can also be
built with no config file at all.

Usage:
    from keycore.config import get_config
    config = get_config()
    matching_config = config["matching"]
"""

import logging
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


# Store the singleton instance (module-level variable)
_config_instance: Optional[Dict[str, Any]] = None

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_project_root() -> Path:
    """
    Find the project root directory.

    The project root is identified by the presence of config.yaml file.
    This function walks up the directory tree from this file's location
    until it finds config.yaml.

    Returns:
        Path: The absolute path to the project root directory.

    Raises:
        FileNotFoundError: If config.yaml cannot be found in any parent directory.
    """
    current_dir = Path(__file__).resolve().parent

    while current_dir != current_dir.parent:
        config_path = current_dir / "config.yaml"
        if config_path.exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "Could not find config.yaml in any parent directory. "
        "Make sure you're running from within the project directory."
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Optional path to the config file.
                     If not provided, uses the default config.yaml in project root.

    Returns:
        Dict containing all configuration values. An empty file yields {}.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the config file contains invalid YAML.
    """
    if config_path is None:
        config_path = get_project_root() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f)

    return config or {}


def get_config(reload: bool = False, config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: If True, forces reloading the configuration from disk.
        config_path: Optional explicit file to load (implies a reload).

    Returns:
        Dict containing all configuration values.

    Example:
        config = get_config()
        threshold = config["matching"]["similarity_threshold"]
    """
    global _config_instance

    if _config_instance is None or reload or config_path is not None:
        _config_instance = load_config(config_path)

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get a specific section from the configuration.

    Args:
        section_name: Name of the configuration section
                      (e.g., "feature", "matching", "enrollment")

    Returns:
        Dict containing the section's configuration values.

    Raises:
        KeyError: If the section doesn't exist in the configuration.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name] or {}


def get_feature_config() -> Dict[str, Any]:
    """Get feature extraction configuration."""
    return get_section("feature")


def get_matching_config() -> Dict[str, Any]:
    """Get similarity matching configuration."""
    return get_section("matching")


def get_smoothing_config() -> Dict[str, Any]:
    """Get temporal smoothing configuration."""
    return get_section("smoothing")


def get_enrollment_config() -> Dict[str, Any]:
    """Get enrollment session configuration."""
    return get_section("enrollment")


def get_storage_config() -> Dict[str, Any]:
    """Get template storage configuration."""
    return get_section("storage")


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging for a host application.

    The library itself never installs handlers; call this once from the
    application entry point.

    Args:
        level: Log level name. Defaults to the "logging.level" config value,
               or INFO when no config file is available.
    """
    if level is None:
        try:
            level = get_config().get("logging", {}).get("level", "INFO")
        except FileNotFoundError:
            level = "INFO"

    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)
