"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from engine_cache.exceptions import ConfigurationError
from engine_cache.models.config import EngineCacheConfig
from engine_cache.utils.path import get_data_dir

log = logging.getLogger(__name__)

# Keys whose blank value means "no limit"
OPTIONAL_KEYS = {"max_installations", "max_age_days"}


def default_settings() -> dict[str, Any]:
    """Returns every setting with its default value."""
    defaults = EngineCacheConfig(engines_dir=str(get_data_dir() / "engines"))
    return {key: getattr(defaults, key) for key in EngineCacheConfig.get_ini_keys()}


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> EngineCacheConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        A missing config file is not an error: the defaults are used.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated EngineCacheConfig object.

        Raises:
            ConfigurationError: If the config file is invalid or validation fails.
        """
        config_from_file = default_settings()

        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(f"Error parsing configuration file: {e}") from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            config_from_file.update(self._get_config_as_dict())
        else:
            log.debug(
                f"No configuration file at '{self.config_file_path}', using defaults."
            )

        if cli_options:
            config_from_file.update(cli_options)

        try:
            config_dir = self.config_file_path.parent
            return EngineCacheConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Creates and saves a new configuration file.

        Args:
            settings: Settings to save; anything missing gets its default value.
        """
        config = configparser.ConfigParser(interpolation=None)
        config["DEFAULT"] = {}
        defaults = default_settings()

        for key in sorted(EngineCacheConfig.get_ini_keys()):
            value = settings.get(key, defaults.get(key))
            config["DEFAULT"][key] = _to_ini(value)

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                config.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        try:
            return {
                "manifest_url": section.get("manifest_url"),
                "engines_dir": section.get("engines_dir"),
                "platform": section.get("platform"),
                "manifest_ttl_seconds": section.getint("manifest_ttl_seconds"),
                "max_installations": _optional(section, "max_installations", int),
                "max_age_days": _optional(section, "max_age_days", float),
                "cull_interval_minutes": section.getfloat("cull_interval_minutes"),
                "download_attempts": section.getint("download_attempts"),
                "max_connections": section.getint("max_connections"),
                "progress_interval_seconds": section.getfloat(
                    "progress_interval_seconds"
                ),
            }
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = default_settings()
        needs_saving = False
        config_section = self._parser["DEFAULT"]

        for key, default_value in defaults.items():
            if key not in config_section:
                config_section[key] = _to_ini(default_value)
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving


def _optional(section: configparser.SectionProxy, key: str, cast: type) -> Any:
    raw = section.get(key, "").strip()
    return cast(raw) if raw else None


def _to_ini(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
