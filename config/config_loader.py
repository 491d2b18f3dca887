"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All engine modules access thresholds through this, never hardcoded values.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_section(name: str) -> Dict[str, Any]:
    """
    Returns a top-level config block by name.

    Raises:
        KeyError: If the section is not in the config.
    """
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No config section '{name}'. "
            f"Available: {list(config.keys())}"
        )
    return config[name]


def get_recurrence_config() -> Dict[str, Any]:
    """Returns the recurrence_detection block."""
    return get_section("recurrence_detection")


def get_deviation_config() -> Dict[str, Any]:
    """Returns the deviation block."""
    return get_section("deviation")


def get_projection_config() -> Dict[str, Any]:
    """Returns the projection block."""
    return get_section("projection")


def get_savings_score_config() -> Dict[str, Any]:
    """Returns the savings_score block."""
    return get_section("savings_score")


def get_duplicate_config() -> Dict[str, Any]:
    """Returns the duplicate_detection block."""
    return get_section("duplicate_detection")


def get_extraction_config() -> Dict[str, Any]:
    """Returns the extraction_validation block."""
    return get_section("extraction_validation")


def get_abuse_guard_config() -> Dict[str, Any]:
    """Returns the abuse_guards block."""
    return get_section("abuse_guards")


def get_activity_monitor_config() -> Dict[str, Any]:
    """Returns the activity_monitoring block."""
    return get_section("activity_monitoring")


def get_provider_registry() -> Dict[str, Dict[str, Any]]:
    """Returns the raw provider registry mapping (slug -> entry dict)."""
    return get_section("provider_registry")


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
