"""Configuration management module."""
import os
import sys
import tomllib
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator

from utils.dates import DEFAULT_TIMEZONE, get_zone

DEFAULT_CONFIG_PATH = "config.toml"
CONFIG_PATH_ENV = "SUBM_CONFIG"


class AdminConfig(BaseModel):
    """Tenant the engine works for."""
    username: str

    @field_validator('username')
    @classmethod
    def validate_username(cls, v: str) -> str:
        """Username must not be blank."""
        v = v.strip()
        if not v:
            raise ValueError("Admin username must not be empty")
        return v


class DatabaseConfig(BaseModel):
    """Database configuration."""
    path: str = "data/subm.db"


LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


def _log_level(value: str) -> str:
    level = value.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Logging level must be one of {list(LOG_LEVELS)}")
    return level


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "logs/subm.log"
    max_bytes: int = 10485760
    backup_count: int = 5
    console: bool = True
    library_levels: Dict[str, str] = Field(default_factory=dict)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        return _log_level(v)

    @field_validator('library_levels')
    @classmethod
    def validate_library_levels(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {name: _log_level(level) for name, level in v.items()}


class NotificationsConfig(BaseModel):
    """Reminder dispatch configuration."""
    interval_seconds: int = 600
    public_base_url: str = ""
    debug_telegram: bool = False
    email_subject: str = "续订提醒通知"

    @field_validator('interval_seconds')
    @classmethod
    def validate_interval(cls, v: int) -> int:
        """Interval must be positive."""
        if v <= 0:
            raise ValueError("interval_seconds must be positive")
        return v

    @field_validator('public_base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize base URL."""
        return v.strip().rstrip('/')


class SmtpConfig(BaseModel):
    """Outgoing mail server."""
    host: str = ""
    port: Optional[int] = None
    user: str = ""
    password: str = ""
    sender: str = ""

    @property
    def configured(self) -> bool:
        """Check if every connection setting is present."""
        return bool(self.host and self.port and self.user and self.password)

    @property
    def from_address(self) -> str:
        """Envelope sender, defaulting to the login user."""
        return self.sender or self.user


class ExchangeRateConfig(BaseModel):
    """ExchangeRate-API configuration."""
    api_base_url: str = "https://v6.exchangerate-api.com/v6"
    request_timeout: int = 30
    poll_interval_seconds: int = 300
    default_timezone: str = DEFAULT_TIMEZONE

    @field_validator('default_timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Timezone must be a known IANA name."""
        if get_zone(v).key != v:
            raise ValueError(f"Unknown timezone: {v}")
        return v


class ServerConfig(BaseModel):
    """HTTP server for the Telegram webhook and exchange rate API."""
    host: str = "0.0.0.0"
    port: int = 3001
    api_token: str = ""


class Config(BaseModel):
    """Main configuration."""
    admin: AdminConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    exchange_rate: ExchangeRateConfig = Field(default_factory=ExchangeRateConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from TOML file.

    Args:
        config_path: Path to configuration file (defaults to $SUBM_CONFIG
            or config.toml)

    Returns:
        Config object

    Exits with status 1 when the file is missing or invalid.
    """
    path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    if not path.exists():
        print(f"Error: Configuration file '{path}' not found!")
        print(f"Please copy 'config.toml.example' to '{path}' and configure it.")
        sys.exit(1)

    try:
        with open(path, 'rb') as f:
            data = tomllib.load(f)

        config = Config(**data)
        return config
    except Exception as e:
        print(f"Error loading configuration: {e}")
        sys.exit(1)
