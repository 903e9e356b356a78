"""
Configuration management for form-relay service.
Loads and validates configuration from YAML files using Pydantic.
"""

import os
import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, validator, ConfigDict

from .domain.ports import ConfigError


logger = logging.getLogger(__name__)


class AppSettings(BaseModel):
    """Deployment-level settings."""
    model_config = ConfigDict(extra='forbid')

    environment: str = Field(
        default="production",
        description="production hides exception details from HTTP clients"
    )

    @validator('environment')
    def validate_environment(cls, v):
        return v.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class RedisConfig(BaseModel):
    """Redis connection configuration."""
    model_config = ConfigDict(extra='forbid')

    url: Optional[str] = Field(
        default=None,
        description="Redis connection URL (required)"
    )
    key_prefix: str = Field(
        default="form-relay:",
        description="Prefix for every key the queue creates"
    )
    max_connections: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum connections in Redis pool"
    )
    socket_timeout: float = Field(
        default=5.0,
        ge=1.0,
        le=30.0,
        description="Socket timeout in seconds"
    )
    socket_connect_timeout: float = Field(
        default=5.0,
        ge=1.0,
        le=30.0,
        description="Connection timeout in seconds"
    )
    health_check_interval: int = Field(
        default=30,
        ge=10,
        le=300,
        description="Health check interval in seconds"
    )

    @validator('url')
    def validate_url(cls, v):
        if v and not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(f"Invalid Redis URL format: {v}")
        return v


class QueueConfig(BaseModel):
    """Job queue, retry and lease configuration."""
    model_config = ConfigDict(extra='forbid')

    name: str = Field(default="form-submissions", description="Queue name")
    attempts: int = Field(default=3, ge=1, le=25, description="Delivery attempts per job")
    backoff_type: str = Field(default="exponential", description="exponential or fixed")
    backoff_delay_ms: int = Field(default=2000, ge=0, description="Base backoff delay")
    remove_on_complete: bool = Field(default=True)
    lock_duration_ms: int = Field(
        default=30000,
        ge=1000,
        description="Lease length before an unacknowledged job counts as stalled"
    )
    stalled_interval_ms: int = Field(
        default=30000,
        ge=1000,
        description="How often stalled jobs are looked for"
    )
    max_stalled_count: int = Field(
        default=1,
        ge=0,
        description="Stalls tolerated before a job is failed"
    )
    concurrency: int = Field(default=1, ge=1, le=32, description="Jobs processed at once")
    poll_interval_ms: int = Field(default=1000, ge=10, le=30000, description="Blocking read timeout")
    drain_timeout_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="How long close() waits for in-flight jobs"
    )
    consumer_id: Optional[str] = Field(
        default=None,
        description="Consumer name within the group, defaults to hostname-pid"
    )

    @validator('backoff_type')
    def validate_backoff_type(cls, v):
        if v not in ('exponential', 'fixed'):
            raise ValueError("backoff_type must be 'exponential' or 'fixed'")
        return v


class LimiterConfig(BaseModel):
    """One admission limiter instance."""
    model_config = ConfigDict(extra='forbid')

    window_seconds: int = Field(default=900, ge=1, description="Window length")
    max_requests: int = Field(default=100, ge=1, description="Requests per window per client")
    message: str = Field(
        default="Demasiadas solicitudes, por favor intente más tarde."
    )


def _form_limiter_defaults() -> LimiterConfig:
    return LimiterConfig(
        window_seconds=900,
        max_requests=10,
        message="Demasiados intentos de envío de formulario. Por favor, espere 15 minutos."
    )


class RateLimitConfig(BaseModel):
    """Admission limiter configuration."""
    model_config = ConfigDict(extra='forbid')

    form: LimiterConfig = Field(default_factory=_form_limiter_defaults)
    general: LimiterConfig = Field(default_factory=LimiterConfig)


class SheetsConfig(BaseModel):
    """Google Sheets destination and service account."""
    model_config = ConfigDict(extra='forbid')

    client_email: Optional[str] = Field(default=None, description="Service account email")
    private_key: Optional[str] = Field(default=None, description="PEM key, \\n may be escaped")
    spreadsheet_id: Optional[str] = Field(default=None, description="Target spreadsheet ID")
    range: str = Field(default="Cliente!A:D", description="A1 range rows are appended to")
    product_tag: str = Field(default="Lipoxin", description="Third column of every row")
    timeout_seconds: float = Field(default=20.0, ge=1.0, le=120.0)


class SubmissionConfig(BaseModel):
    """Submission timestamp configuration."""
    model_config = ConfigDict(extra='forbid')

    timezone: str = Field(default="America/Guayaquil")


class ServerConfig(BaseModel):
    """HTTP server configuration."""
    model_config = ConfigDict(extra='forbid')

    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to"
    )
    port: int = Field(
        default=10000,
        ge=1,
        le=65535,
        description="Port to bind to"
    )
    log_level: str = Field(
        default="info",
        description="Uvicorn log level"
    )
    trust_forwarded_for: bool = Field(
        default=False,
        description="Key clients on X-Forwarded-For (only behind a proxy)"
    )
    forwarded_proxy_hops: int = Field(
        default=1,
        ge=1,
        le=10,
        description="Trusted proxies appending to X-Forwarded-For"
    )
    graceful_timeout_seconds: int = Field(
        default=10,
        ge=0,
        le=300,
        description="How long open connections get to finish on shutdown"
    )

    @validator('log_level')
    def validate_log_level(cls, v):
        valid_levels = ['critical', 'error', 'warning', 'info', 'debug', 'trace']
        if v.lower() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.lower()


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(extra='forbid')

    level: str = Field(
        default="INFO",
        description="Logging level"
    )
    json_format: bool = Field(
        default=True,
        description="Enable JSON log formatting"
    )
    enable_correlation: bool = Field(
        default=True,
        description="Enable correlation IDs in logs"
    )

    @validator('level')
    def validate_log_level(cls, v):
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()


class AppConfig(BaseModel):
    """Main application configuration."""
    model_config = ConfigDict(extra='forbid')

    app: AppSettings = Field(default_factory=AppSettings)
    server: ServerConfig = Field(default_factory=ServerConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sheets: SheetsConfig = Field(default_factory=SheetsConfig)
    submission: SubmissionConfig = Field(default_factory=SubmissionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# Settings the service refuses to start without, keyed by their env var name
REQUIRED_SETTINGS = {
    'GOOGLE_CLIENT_EMAIL': 'sheets.client_email',
    'GOOGLE_PRIVATE_KEY': 'sheets.private_key',
    'SPREADSHEET_ID': 'sheets.spreadsheet_id',
    'REDIS_URL': 'redis.url',
}

# Environment variable mappings
ENV_MAPPINGS = {
    'APP_ENV': 'app.environment',
    'REDIS_URL': 'redis.url',
    'REDIS_KEY_PREFIX': 'redis.key_prefix',
    'QUEUE_NAME': 'queue.name',
    'QUEUE_CONCURRENCY': 'queue.concurrency',
    'QUEUE_DRAIN_TIMEOUT': 'queue.drain_timeout_seconds',
    'GOOGLE_CLIENT_EMAIL': 'sheets.client_email',
    'GOOGLE_PRIVATE_KEY': 'sheets.private_key',
    'SPREADSHEET_ID': 'sheets.spreadsheet_id',
    'SHEET_RANGE': 'sheets.range',
    'PRODUCT_TAG': 'sheets.product_tag',
    'SERVER_HOST': 'server.host',
    'PORT': 'server.port',
    'TRUST_FORWARDED_FOR': 'server.trust_forwarded_for',
    'FORWARDED_PROXY_HOPS': 'server.forwarded_proxy_hops',
    'LOG_LEVEL': 'logging.level',
    'LOG_JSON': 'logging.json_format'
}

# Values passed through as strings, never type-converted
RAW_ENV_VARS = {
    'APP_ENV',
    'REDIS_URL',
    'REDIS_KEY_PREFIX',
    'QUEUE_NAME',
    'GOOGLE_CLIENT_EMAIL',
    'GOOGLE_PRIVATE_KEY',
    'SPREADSHEET_ID',
    'SHEET_RANGE',
    'PRODUCT_TAG',
    'SERVER_HOST',
    'LOG_LEVEL',
}


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to config file, defaults to CONFIG_PATH env var or ./config.yml

    Returns:
        Loaded and validated configuration

    Raises:
        ValueError: If config validation or YAML parsing fails
    """
    if config_path is None:
        config_path = os.getenv('CONFIG_PATH', './config.yml')

    config_file = Path(config_path)

    try:
        if config_file.exists():
            with open(config_file, 'r', encoding='utf-8') as f:
                yaml_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded config from: {config_file}")
        else:
            logger.warning(f"Config file not found: {config_file}, using defaults")
            yaml_data = {}

        # Environment always wins over the file
        yaml_data = _apply_env_overrides(yaml_data)

        config = AppConfig(**yaml_data)

        logger.info(
            "Configuration loaded successfully",
            extra={
                "component": "config",
                "config_file": str(config_file),
                "queue_name": config.queue.name,
                "server_port": config.server.port
            }
        )

        return config

    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML config: {e}")
        raise ValueError(f"Invalid YAML config: {e}") from e

    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        raise


def check_required_settings(config: AppConfig) -> List[str]:
    """
    Find required settings that are missing or blank.

    Returns:
        Env var names of the missing settings, in declaration order
    """
    missing = []
    for env_var, path in REQUIRED_SETTINGS.items():
        value = config
        for key in path.split('.'):
            value = getattr(value, key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(env_var)
    return missing


def ensure_required_settings(config: AppConfig) -> None:
    """
    Refuse to start in a degraded state.

    Raises:
        ConfigError: Listing every missing setting
    """
    missing = check_required_settings(config)
    for env_var in missing:
        logger.error(
            f"Required configuration {env_var} is not defined",
            extra={"component": "config", "setting": env_var}
        )
    if missing:
        raise ConfigError(missing)


def _apply_env_overrides(config_data: dict) -> dict:
    """
    Apply environment variable overrides to config data.

    Supports dot notation for nested keys:
    - REDIS_URL -> redis.url
    - PORT -> server.port
    - SPREADSHEET_ID -> sheets.spreadsheet_id

    Args:
        config_data: Base configuration data

    Returns:
        Configuration data with environment overrides applied
    """
    for env_var, config_path in ENV_MAPPINGS.items():
        env_value = os.getenv(env_var)
        if env_value is not None:
            value = env_value if env_var in RAW_ENV_VARS else _convert_env_value(env_value)
            _set_nested_value(config_data, config_path, value)
            logger.debug(f"Applied env override: {env_var} -> {config_path}")

    return config_data


def _set_nested_value(data: dict, path: str, value) -> None:
    """
    Set a nested dictionary value using dot notation.

    Args:
        data: Dictionary to modify
        path: Dot-separated path (e.g., 'redis.url')
        value: Value to set
    """
    keys = path.split('.')
    current = data

    for key in keys[:-1]:
        if not isinstance(current.get(key), dict):
            current[key] = {}
        current = current[key]

    current[keys[-1]] = value


def _convert_env_value(value: str):
    """
    Convert environment variable string to appropriate Python type.

    Args:
        value: String value from environment

    Returns:
        Converted value (bool, int, float, or str)
    """
    if value.lower() in ('true', 'yes', 'on'):
        return True
    elif value.lower() in ('false', 'no', 'off'):
        return False

    try:
        if '.' in value:
            return float(value)
        else:
            return int(value)
    except ValueError:
        pass

    return value
