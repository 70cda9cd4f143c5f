"""
WimForge Configuration Management
Handles pipeline settings, tool search locations and policy file paths
"""

import json
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, asdict, fields

from wimforge.core.models import FormatConflictPolicy


@dataclass
class AppConfig:
    """Application configuration settings"""
    app_name: str = "WimForge"
    version: str = "1.0.0"
    log_level: str = "INFO"
    temp_dir: str = ""
    working_dir: str = ""
    keep_working_dir: bool = False
    format_conflict_policy: str = FormatConflictPolicy.ABORT.value
    min_iso_size_bytes: int = 1024 * 1024
    space_margin_bytes: int = 2 * 1024 * 1024 * 1024
    oscdimg_package_id: str = "Microsoft.OSCDIMG"
    extra_oscdimg_paths: Optional[List[str]] = None
    driver_policy_file: str = ""
    strings_file: str = ""
    answer_file_url: str = "https://raw.githubusercontent.com/memstechtips/UnattendedWinstall/main/autounattend.xml"

    def __post_init__(self):
        if self.extra_oscdimg_paths is None:
            self.extra_oscdimg_paths = []
        if not self.temp_dir:
            self.temp_dir = str(Path.home() / ".wimforge" / "temp")
        if not self.working_dir:
            self.working_dir = str(Path(self.temp_dir) / "WimForgeWorking")


class Config:
    """Central configuration manager for WimForge"""

    def __init__(self, config_file: Optional[str] = None):
        self.logger = logging.getLogger(__name__)

        self.app_dir = Path.home() / ".wimforge"
        self.config_file = config_file or str(self.app_dir / "config.json")

        self._config = AppConfig()
        self._custom_settings: Dict[str, Any] = {}
        self._known_fields = {f.name for f in fields(AppConfig)}
        self._ensure_directories()
        self.load()

    def _ensure_directories(self):
        """Create necessary application directories"""
        directories = [
            self.app_dir,
            Path(self._config.temp_dir),
            self.app_dir / "logs",
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)
            self.logger.debug(f"Ensured directory exists: {directory}")

    def load(self) -> bool:
        """Load configuration from file"""
        try:
            if os.path.exists(self.config_file):
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                    app_values = {k: v for k, v in data.items() if k in self._known_fields}
                    self._custom_settings = {k: v for k, v in data.items() if k not in self._known_fields}
                    self._config = AppConfig(**app_values)
                    self.logger.info(f"Configuration loaded from {self.config_file}")
                    return True
            else:
                self.logger.info("No configuration file found, using defaults")
                self.save()
                return False
        except Exception as e:
            self.logger.error(f"Error loading configuration: {e}")
            return False

    def save(self) -> bool:
        """Save configuration to file"""
        try:
            self._ensure_directories()
            Path(self.config_file).parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w', encoding='utf-8') as f:
                data = asdict(self._config)
                data.update(self._custom_settings)
                json.dump(data, f, indent=2)
            self.logger.info(f"Configuration saved to {self.config_file}")
            return True
        except Exception as e:
            self.logger.error(f"Error saving configuration: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        if hasattr(self._config, key):
            return getattr(self._config, key)
        return self._custom_settings.get(key, default)

    def set(self, key: str, value: Any) -> bool:
        """Set configuration value"""
        try:
            if key in self._known_fields:
                setattr(self._config, key, value)
                self.logger.debug(f"Configuration updated: {key} = {value}")
                return True
            self._custom_settings[key] = value
            self.logger.debug(f"Custom configuration updated: {key} = {value}")
            return True
        except Exception as e:
            self.logger.error(f"Error setting configuration: {e}")
            return False

    def get_app_dir(self) -> Path:
        """Get application directory path"""
        return self.app_dir

    def get_temp_dir(self) -> Path:
        """Get temporary directory path"""
        return Path(self._config.temp_dir)

    def get_log_dir(self) -> Path:
        """Get log directory path"""
        return self.app_dir / "logs"

    def get_working_dir(self) -> Path:
        """Get default ISO working directory path"""
        return Path(self._config.working_dir)

    def get_format_policy(self) -> FormatConflictPolicy:
        """Get the configured policy for trees holding both WIM and ESD"""
        try:
            return FormatConflictPolicy(self._config.format_conflict_policy)
        except ValueError:
            self.logger.warning(
                f"Unknown format_conflict_policy '{self._config.format_conflict_policy}', using abort"
            )
            return FormatConflictPolicy.ABORT

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        data = asdict(self._config)
        data.update(self._custom_settings)
        return data
