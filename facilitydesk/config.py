# FacilityDesk - School Facility Equipment Checkout System
# Copyright (C) 2025 Oleg Tokmakov
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""Configuration management for FacilityDesk."""

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "FACILITYDESK_CONFIG"


class AppConfig(BaseModel):
    """Application configuration."""

    name: str = "FacilityDesk"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    base_url: str = "http://localhost:8000"
    log_level: str = "INFO"


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/facilitydesk.db"
    url: str = ""  # Full SQLAlchemy URL, overrides path (e.g. postgresql://...)
    busy_timeout_seconds: float = 15.0


class EmailConfig(BaseModel):
    """SMTP email configuration."""

    enabled: bool = False
    from_address: str = "noreply@example.com"
    from_name: str = "FacilityDesk"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_use_ssl: bool = False


class CheckoutConfig(BaseModel):
    """Checkout and request workflow configuration."""

    request_retention_days: int = 60  # Returned requests older than this are purged
    allow_reapproval: bool = True  # Denied requests may be approved again
    max_purpose_length: int = 2000
    max_message_length: int = 5000


class RecurrenceConfig(BaseModel):
    """Recurring event expansion limits."""

    horizon_days: int = 365
    max_instances: int = 200


class SchedulerConfig(BaseModel):
    """Background job configuration."""

    enabled: bool = True
    notification_interval_minutes: int = 5
    cleanup_hour: int = 3  # UTC
    notification_log_retention_days: int = 30


class Settings(BaseModel):
    """Main settings container."""

    app: AppConfig = Field(default_factory=AppConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    checkout: CheckoutConfig = Field(default_factory=CheckoutConfig)
    recurrence: RecurrenceConfig = Field(default_factory=RecurrenceConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


def load_config(config_path: Optional[str] = None) -> Settings:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. If None, tries default locations.

    Returns:
        Settings object with loaded configuration.
    """
    default_paths = [
        Path("config/config.yaml"),
        Path("config.yaml"),
        Path("/app/config/config.yaml"),
        Path("/etc/facilitydesk/config.yaml"),
    ]

    # Allow override via environment variable
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    config_file = None

    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        for path in default_paths:
            if path.exists():
                config_file = path
                break

    if config_file is None:
        logger.info("No config file found, using defaults")
        return Settings()

    logger.info("Loading config from: %s", config_file)

    with open(config_file, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return Settings(**config_data)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = load_config()
    return _settings


def init_settings(config_path: Optional[str] = None) -> Settings:
    """Initialize settings from config file."""
    global _settings
    _settings = load_config(config_path)
    return _settings


def update_settings(new_settings: Settings) -> None:
    """Update the global settings instance."""
    global _settings
    _settings = new_settings
