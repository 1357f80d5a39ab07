"""
Engine Configuration

Settings for the automation engine with defaults, .env file and environment
variable overrides. Each engine owns its own EngineConfig instance.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)


class EngineConfig:
    """
    Configuration for an automation engine.

    Every setting can be overridden by an upper-cased environment variable with
    the ``AUTOMATION_`` prefix, e.g. ``AUTOMATION_MAX_LOOP_ITERATIONS=200``.
    """

    # Default settings with their types
    DEFAULT_SETTINGS = {
        # Control flow limits
        "max_loop_iterations": (1000, int),
        "max_nesting_depth": (32, int),
        # Effect adapter calls
        "effect_timeout_seconds": (15.0, float),
        # Delay step validation
        "max_delay_seconds": (3600.0, float),
        # Variable templating
        "strict_templates": (True, bool),
        # Run report
        "record_outputs": (True, bool),
    }

    # Create mapping dynamically - each setting can be set via its prefixed env var
    ENV_MAPPING = {
        f"AUTOMATION_{setting.upper()}": setting for setting in DEFAULT_SETTINGS.keys()
    }

    def __init__(self, overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration with default values.

        Args:
            overrides: Optional setting values applied on top of the defaults

        Raises:
            ValueError: If an override names an unknown setting
        """
        self.settings: Dict[str, Any] = {}
        for key, (default_value, _) in self.DEFAULT_SETTINGS.items():
            self.settings[key] = default_value

        if overrides:
            self.update(overrides)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Union[str, Path]] = None,
    ) -> "EngineConfig":
        """
        Build configuration from a .env file and the process environment.

        Values from ``environ`` win over values from ``env_file``.

        Args:
            environ: Environment mapping (defaults to ``os.environ``)
            env_file: Optional path to a .env file

        Returns:
            EngineConfig instance
        """
        config = cls()

        if env_file is not None:
            env_path = Path(env_file)
            if env_path.exists() and env_path.is_file():
                logger.debug(f"Loading engine settings from: {env_path}")
                config._apply_env(config._parse_env_file(env_path))
            else:
                logger.debug(f"Env file not found: {env_path}")

        config._apply_env(os.environ if environ is None else environ)
        return config

    def _convert_value(self, value: Any, target_type: type) -> Any:
        """Convert a raw value to the target type"""
        if target_type == bool:
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1", "yes", "on")
            return bool(value)
        return target_type(value)

    def _parse_env_file(self, env_file_path: Path) -> Dict[str, str]:
        """Parse a .env file into a dictionary"""
        values: Dict[str, str] = {}
        with open(env_file_path, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    key = key.strip()
                    value = value.strip()

                    # Remove quotes if present
                    if (value.startswith('"') and value.endswith('"')) or (
                        value.startswith("'") and value.endswith("'")
                    ):
                        value = value[1:-1]

                    values[key] = value
        return values

    def _apply_env(self, environ: Mapping[str, str]) -> None:
        """Apply mapped environment variables to settings"""
        for key, value in environ.items():
            setting_name = self.ENV_MAPPING.get(key)
            if setting_name is None:
                continue
            _, target_type = self.DEFAULT_SETTINGS[setting_name]
            try:
                self.settings[setting_name] = self._convert_value(value, target_type)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {key}: {value!r}")

    def get_setting(self, name: str, default: Any = None) -> Any:
        """Get a setting value by name"""
        return self.settings.get(name, default)

    def update(self, updates: Dict[str, Any]) -> None:
        """
        Update settings, converting values to the declared types.

        Raises:
            ValueError: If a key is not a known setting or cannot be converted
        """
        for key, value in updates.items():
            if key not in self.DEFAULT_SETTINGS:
                raise ValueError(f"Unknown setting: {key}")
            _, target_type = self.DEFAULT_SETTINGS[key]
            self.settings[key] = self._convert_value(value, target_type)

    def reset_setting(self, name: str) -> None:
        """Reset a setting to its default value"""
        if name not in self.DEFAULT_SETTINGS:
            raise ValueError(f"Unknown setting: {name}")
        self.settings[name] = self.DEFAULT_SETTINGS[name][0]

    @property
    def max_loop_iterations(self) -> int:
        return self.settings["max_loop_iterations"]

    @property
    def max_nesting_depth(self) -> int:
        return self.settings["max_nesting_depth"]

    @property
    def effect_timeout_seconds(self) -> float:
        return self.settings["effect_timeout_seconds"]

    @property
    def max_delay_seconds(self) -> float:
        return self.settings["max_delay_seconds"]

    @property
    def strict_templates(self) -> bool:
        return self.settings["strict_templates"]

    @property
    def record_outputs(self) -> bool:
        return self.settings["record_outputs"]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return dict(self.settings)

    def __repr__(self) -> str:
        """String representation."""
        return f"EngineConfig({self.settings})"
