"""
Manages loading, saving, and validating the configuration using Pydantic.

The schema (`Settings`) uses the same camelCase keys as the desktop shell's
global settings file, so that file can be pointed to directly with
`MEDIAJOBS_SETTINGS_PATH`. `ConfigManager` handles persistence to JSON.
"""

import json
import time
import logging
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .constants import HISTORY_LIMIT, LOGS_TAIL_LIMIT, MAX_CONCURRENT_JOBS
from .jobs import Engine


class _SettingsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class PathSettings(_SettingsModel):
    workflow_root: Optional[Path] = None


class EngineSettings(_SettingsModel):
    """Executables configured by the user. Empty means auto-detect."""
    yt_dlp_path: Optional[Path] = None
    ffmpeg_path: Optional[Path] = None
    image_magick_path: Optional[Path] = None
    libre_office_path: Optional[Path] = None

    @field_validator('*', mode='before')
    @classmethod
    def blank_is_unset(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def tool_paths(self) -> Dict[str, Path]:
        """The configured paths keyed by engine tag, omitting unset ones."""
        paths = {
            Engine.YT_DLP.value: self.yt_dlp_path,
            Engine.FFMPEG.value: self.ffmpeg_path,
            Engine.IMAGEMAGICK.value: self.image_magick_path,
            Engine.SOFFICE.value: self.libre_office_path,
        }
        return {engine: path for engine, path in paths.items() if path}


class Settings(_SettingsModel):
    """
    Defines the configuration schema.

    Unknown keys are ignored, so a settings file shared with other
    components loads without errors.
    """
    paths: PathSettings = Field(default_factory=PathSettings)
    engines: EngineSettings = Field(default_factory=EngineSettings)
    max_concurrent_jobs: int = Field(default=MAX_CONCURRENT_JOBS, ge=1, le=20)
    history_limit: int = Field(default=HISTORY_LIMIT, ge=1)
    logs_tail_limit: int = Field(default=LOGS_TAIL_LIMIT, ge=1)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Ensures log_level is a valid logging level string."""
        upper_value = value.upper()
        allowed_levels: List[str] = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if upper_value not in allowed_levels:
            raise ValueError(f"'{value}' is not a valid log level. Must be one of {allowed_levels}.")
        return upper_value


class ConfigManager:
    """Handles loading and saving the configuration file."""
    def __init__(self, config_path: Path):
        """
        Initializes the ConfigManager.

        Args:
            config_path: The path to the configuration file.
        """
        self.config_path = Path(config_path)
        self.logger = logging.getLogger(__name__)

    def load(self) -> Settings:
        """
        Loads config from file, merges with defaults, validates, and returns it.

        If the file doesn't exist, defaults are written and returned. If it is
        invalid, it is backed up and defaults are returned.

        Returns:
            A validated Settings object.
        """
        if not self.config_path.exists():
            self.logger.info("Config file not found. Creating with default settings.")
            default_settings = Settings()
            self.save(default_settings)
            return default_settings

        try:
            config_data = json.loads(self.config_path.read_text(encoding='utf-8'))
            return Settings.model_validate(config_data)
        except (ValidationError, json.JSONDecodeError, OSError) as e:
            self.logger.error(f"Error loading {self.config_path}: {e}. Backing up and using defaults.")
            try:
                backup_path = self.config_path.with_suffix(f".{int(time.time())}.bak")
                self.config_path.rename(backup_path)
                self.logger.info(f"Backed up corrupted config to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted config file: {backup_e}")
            return Settings()

    def save(self, settings: Settings):
        """
        Saves the provided settings object to the config file.

        Args:
            settings: The Settings object to save.
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(settings.model_dump_json(by_alias=True, indent=4), encoding='utf-8')
        except OSError as e:
            self.logger.error(f"Error saving config file to {self.config_path}: {e}")
