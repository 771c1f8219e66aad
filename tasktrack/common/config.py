"""
Centralized Configuration for TaskTrack

This module provides the configuration system for the TaskTrack backend core.
It handles configuration from defaults, config files and environment variables,
with type checking and validation through pydantic models.
"""

import os
import json
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from tasktrack.common.error_handling import ConfigurationError
from tasktrack.common.logger import get_logger

# Configure logging
logger = get_logger(__name__)

class RedisConfig(BaseModel):
    """Redis connection configuration"""
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    db: int = Field(default=0)
    password: Optional[str] = Field(default=None)
    use_ssl: bool = Field(default=False)
    socket_timeout: float = Field(default=5.0)
    connect_timeout: float = Field(default=5.0)
    max_connections: int = Field(default=50)
    drain_timeout: float = Field(default=5.0)

    @property
    def connection_string(self) -> str:
        """Get the Redis connection string"""
        protocol = "rediss" if self.use_ssl else "redis"
        auth = f":{self.password}@" if self.password else ""
        return f"{protocol}://{auth}{self.host}:{self.port}/{self.db}"

class CacheConfig(BaseModel):
    """Cache configuration"""
    default_ttl: int = Field(default=300)  # 5 minutes
    serialization: str = Field(default="json")

    @field_validator('serialization')
    @classmethod
    def validate_serialization(cls, v):
        """Validate serialization format"""
        valid_formats = ['json', 'pickle']
        if v.lower() not in valid_formats:
            raise ValueError(f"Invalid serialization format: {v}. Must be one of {valid_formats}")
        return v.lower()

class RateLimitConfig(BaseModel):
    """Rate limiting configuration"""
    enabled: bool = Field(default=True)
    key_prefix: str = Field(default="ratelimit:")
    block_duration: float = Field(default=60.0)  # seconds
    # Take the caller address from X-Forwarded-For; only safe behind a proxy that sets it
    trust_forwarded_for: bool = Field(default=False)

class LoggingConfig(BaseModel):
    """Logging configuration"""
    level: str = Field(default="INFO")
    json_format: bool = Field(default=False)
    file_path: Optional[str] = Field(default=None)

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        """Validate log level"""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

class EnvironmentConfig(BaseModel):
    """Environment configuration"""
    env: str = Field(default="development")

    @field_validator('env')
    @classmethod
    def validate_env(cls, v):
        """Validate environment"""
        valid_envs = ['development', 'testing', 'staging', 'production']
        if v.lower() not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v.lower()

class AppConfig(BaseModel):
    """Main application configuration"""
    app_name: str = Field(default="TaskTrack")
    version: str = Field(default="0.1.0")
    redis: RedisConfig = Field(default_factory=RedisConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    environment: EnvironmentConfig = Field(default_factory=EnvironmentConfig)

    @property
    def is_development(self) -> bool:
        """Check if environment is development"""
        return self.environment.env == "development"

    @property
    def is_testing(self) -> bool:
        """Check if environment is testing"""
        return self.environment.env == "testing"

    @property
    def is_production(self) -> bool:
        """Check if environment is production"""
        return self.environment.env == "production"

# Environment variable -> (section, field)
ENV_VARS: Dict[str, Tuple[str, str]] = {
    "REDIS_HOST": ("redis", "host"),
    "REDIS_PORT": ("redis", "port"),
    "REDIS_DB": ("redis", "db"),
    "REDIS_PASSWORD": ("redis", "password"),
    "REDIS_USE_SSL": ("redis", "use_ssl"),
    "REDIS_SOCKET_TIMEOUT": ("redis", "socket_timeout"),
    "REDIS_CONNECT_TIMEOUT": ("redis", "connect_timeout"),
    "REDIS_MAX_CONNECTIONS": ("redis", "max_connections"),
    "REDIS_DRAIN_TIMEOUT": ("redis", "drain_timeout"),
    "CACHE_DEFAULT_TTL": ("cache", "default_ttl"),
    "CACHE_SERIALIZATION": ("cache", "serialization"),
    "RATE_LIMIT_ENABLED": ("rate_limit", "enabled"),
    "RATE_LIMIT_PREFIX": ("rate_limit", "key_prefix"),
    "RATE_LIMIT_BLOCK_DURATION": ("rate_limit", "block_duration"),
    "RATE_LIMIT_TRUST_FORWARDED_FOR": ("rate_limit", "trust_forwarded_for"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_JSON": ("logging", "json_format"),
    "LOG_FILE": ("logging", "file_path"),
    "ENV": ("environment", "env"),
}

class ConfigLoader:
    """
    Configuration loader for the application.

    Loads configuration from:
    1. Default values
    2. Config file (YAML or JSON)
    3. Environment variables, including a local .env file (highest priority)
    """

    def __init__(self, config_path: Optional[str] = None, use_dotenv: bool = True):
        """
        Initialize the config loader.

        Args:
            config_path: Path to config file (YAML or JSON)
            use_dotenv: Whether to read a .env file into the environment first
        """
        if use_dotenv:
            load_dotenv()
        self.config_path = config_path or os.environ.get("CONFIG_PATH")
        self._config = None

    def load(self) -> AppConfig:
        """
        Load configuration from all sources.

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If the merged values fail validation
        """
        if self._config is not None:
            return self._config

        # Load from file if specified
        merged: Dict[str, Any] = {}
        if self.config_path:
            merged = self._load_from_file(self.config_path)

        # Environment overrides file values
        for section, values in self._load_from_env().items():
            merged.setdefault(section, {}).update(values)

        try:
            self._config = AppConfig(**merged)
        except ValidationError as e:
            raise ConfigurationError(str(e), config_key=self.config_path) from e
        return self._config

    def _load_from_env(self) -> Dict[str, Dict[str, str]]:
        """
        Collect overrides from environment variables.

        Returns:
            Nested dictionary of section -> field -> raw string value
        """
        overrides: Dict[str, Dict[str, str]] = {}
        for name, (section, field) in ENV_VARS.items():
            value = os.environ.get(name)
            if value is not None and value != "":
                overrides.setdefault(section, {})[field] = value
        return overrides

    def _load_from_file(self, path: str) -> Dict[str, Any]:
        """
        Load configuration from a file.

        Args:
            path: Path to config file

        Returns:
            Loaded configuration dictionary
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}")
            return {}

        try:
            if path.suffix.lower() in ['.yaml', '.yml']:
                with open(path, 'r') as f:
                    return yaml.safe_load(f) or {}
            elif path.suffix.lower() == '.json':
                with open(path, 'r') as f:
                    return json.load(f)
            else:
                logger.warning(f"Unsupported config file format: {path.suffix}")
                return {}
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}", config_key=str(path)) from e

# Global configuration instance, created on first use
_config: Optional[AppConfig] = None

def get_config() -> AppConfig:
    """
    Get the loaded configuration.

    Returns:
        Loaded configuration
    """
    global _config
    if _config is None:
        _config = ConfigLoader().load()
    return _config

def reload_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Reload the configuration.

    Args:
        config_path: Path to config file

    Returns:
        Reloaded configuration
    """
    global _config
    _config = ConfigLoader(config_path).load()
    return _config
