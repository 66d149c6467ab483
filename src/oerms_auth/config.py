"""Configuration management for the OERMS auth core.

Configuration is layered from model defaults, an optional JSON/YAML file,
``OERMS_AUTH_`` environment variables (with ``.env`` support) and CLI
overrides, in increasing order of precedence.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "OERMS_AUTH_"


class ConfigError(Exception):
    """Raised when configuration validation fails."""


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    """Deployment environments."""

    LOCAL = "local"
    DEV = "dev"
    STAGE = "stage"
    PROD = "prod"


class Config(BaseModel):
    """Settings for the OAuth client, session manager and policy gate."""

    # Core settings
    app_name: str = Field(default="OERMS Auth", description="Application name")
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    environment: Environment = Field(
        default=Environment.LOCAL, description="Deployment environment"
    )

    # Companion web app
    host: str = Field(default="127.0.0.1", description="Bind host for the web app")
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port for the web app")

    # OAuth 2.0 Authorization Code with PKCE
    auth_server_url: str = Field(
        default="http://localhost:8080", description="Authorization server base URL"
    )
    client_id: str = Field(default="oerms-nextjs-client", description="OAuth client identifier")
    redirect_uri: str = Field(
        default="http://localhost:3000/auth/callback",
        description="Registered OAuth redirect URI",
    )
    scope: str = Field(
        default="openid profile email read write", description="Space-separated scopes"
    )

    # Backend API
    api_base_url: str = Field(
        default="http://localhost:8080", description="Base URL of the protected backend"
    )
    policy_path: str = Field(
        default="/api/policy/evaluate", description="Policy evaluation endpoint path"
    )

    # Routes the UI is sent to after login / on auth failure
    landing_route: str = Field(default="/dashboard", description="Post-login landing route")
    login_route: str = Field(default="/login", description="Login route used for retries")

    # Token lifecycle
    http_timeout: float = Field(
        default=10.0, gt=0, description="Timeout in seconds for token and policy calls"
    )
    refresh_buffer_seconds: int = Field(
        default=60, ge=0, description="Seconds before expiry to refresh proactively"
    )

    # Tab-scoped storage
    storage_path: str | None = Field(
        default=None, description="Path of the encrypted storage file"
    )
    storage_encryption_key: SecretStr | None = Field(
        default=None, description="Fernet key for the storage file"
    )

    model_config = {
        "extra": "ignore",
        "validate_assignment": True,
    }

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Normalize environment to lowercase."""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator("auth_server_url", "api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_oauth(self) -> Config:
        """Reject empty OAuth client settings."""
        required_fields = [
            ("auth_server_url", self.auth_server_url),
            ("client_id", self.client_id),
            ("redirect_uri", self.redirect_uri),
            ("scope", self.scope),
        ]
        missing = [name for name, value in required_fields if not value or not value.strip()]
        if missing:
            msg = f"OAuth client is missing required fields: {', '.join(missing)}"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def validate_storage(self) -> Config:
        """Require an encryption key for file-backed storage."""
        if self.storage_path and not self.storage_encryption_key:
            msg = "storage_encryption_key is required when storage_path is set"
            raise ValueError(msg)
        return self

    @property
    def authorize_url(self) -> str:
        return f"{self.auth_server_url}/oauth2/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.auth_server_url}/oauth2/token"

    @property
    def revoke_url(self) -> str:
        return f"{self.auth_server_url}/oauth2/revoke"


_ENV_MAPPING = {
    "app_name": "APP_NAME",
    "log_level": "LOG_LEVEL",
    "environment": "ENVIRONMENT",
    "host": "HOST",
    "port": "PORT",
    "auth_server_url": "AUTH_SERVER_URL",
    "client_id": "CLIENT_ID",
    "redirect_uri": "REDIRECT_URI",
    "scope": "SCOPE",
    "api_base_url": "API_BASE_URL",
    "policy_path": "POLICY_PATH",
    "landing_route": "LANDING_ROUTE",
    "login_route": "LOGIN_ROUTE",
    "http_timeout": "HTTP_TIMEOUT",
    "refresh_buffer_seconds": "REFRESH_BUFFER_SECONDS",
    "storage_path": "STORAGE_PATH",
    "storage_encryption_key": "STORAGE_ENCRYPTION_KEY",
}

_INT_FIELDS = frozenset({"port", "refresh_buffer_seconds"})
_FLOAT_FIELDS = frozenset({"http_timeout"})
_SECRET_FIELDS = frozenset({"storage_encryption_key"})


def _load_env_config() -> dict[str, Any]:
    """Load configuration from ``OERMS_AUTH_*`` environment variables."""
    config: dict[str, Any] = {}
    for field_name, env_suffix in _ENV_MAPPING.items():
        value: Any = os.environ.get(f"{ENV_PREFIX}{env_suffix}")
        if value is None:
            continue
        if field_name in _INT_FIELDS:
            with contextlib.suppress(ValueError):
                value = int(value)
        elif field_name in _FLOAT_FIELDS:
            with contextlib.suppress(ValueError):
                value = float(value)
        config[field_name] = value
    return config


def _load_file_config(path: str | Path) -> dict[str, Any]:
    """Load configuration from a JSON or YAML file."""
    path = Path(path)
    if not path.exists():
        msg = f"Configuration file not found: {path}"
        raise ConfigError(msg)

    suffix = path.suffix.lower()
    content = path.read_text()

    if suffix == ".json":
        return dict(json.loads(content))

    if suffix in (".yaml", ".yml"):
        import yaml

        return dict(yaml.safe_load(content) or {})

    msg = f"Unsupported configuration file format: {suffix}"
    raise ConfigError(msg)


def _redact_for_log(key: str, value: Any) -> str:
    if key in _SECRET_FIELDS and value:
        return "***"
    return str(value)


def load_config(
    path: str | Path | None = None,
    cli_args: dict[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Configuration file
    4. Model defaults

    Raises:
        ConfigError: If configuration is invalid
    """
    load_dotenv()

    config_dict: dict[str, Any] = {}
    if path:
        logger.debug("Loading configuration from file: %s", path)
        config_dict.update(_load_file_config(path))

    for key, value in _load_env_config().items():
        config_dict[key] = value
        logger.debug("Config %s from environment: %s", key, _redact_for_log(key, value))

    if cli_args:
        for key, value in cli_args.items():
            if value is not None:
                config_dict[key] = value
                logger.debug("Config %s from CLI: %s", key, _redact_for_log(key, value))

    try:
        return Config(**config_dict)
    except Exception as e:
        msg = f"Configuration validation failed: {e}"
        raise ConfigError(msg) from e
