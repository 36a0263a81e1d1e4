"""Configuration module for loading and managing application settings"""
from typing import Dict, Any, Optional
from .lib.load_settings_conf import load_settings_conf, validate_settings, SettingsError, DEFAULTS

__all__ = ['settings_conf', 'load_config', 'SettingsError', 'DEFAULTS']

_settings: Optional[Dict[str, Any]] = None

def load_config(settings_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from settings.conf and the environment.

    Args:
        settings_path: Optional directory containing settings.conf. If not provided,
                       the current directory is used and the result is cached.

    Returns:
        Dictionary with validated settings
    """
    global _settings

    if settings_path is not None:
        return load_settings_conf(settings_path)

    if _settings is None:
        try:
            _settings = load_settings_conf()
        except SettingsError as e:
            # Re-raise the error but provide more context
            raise SettingsError(
                f"Configuration Error\n"
                "=================\n\n"
                f"{str(e)}\n\n"
                "Please ensure settings.conf and MATCHMAKER_* variables are properly configured."
            ) from e
    return _settings

def settings_conf() -> Dict[str, Any]:
    """Return the cached process-wide settings."""
    return load_config()
