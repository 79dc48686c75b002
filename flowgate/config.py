from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_EXPIRING_WINDOW_MINUTES,
    DEFAULT_INPUT_TIMEOUT_MINUTES,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_PROVIDER,
    DEFAULT_RETENTION_DAYS,
)


class EngineConfig(BaseModel):
    """Connection settings for the external execution engine."""

    backend: Literal["http", "inmemory"] = "http"
    base_url: str = "http://localhost:5678"
    api_key: Optional[str] = None
    api_key_header: str = "X-N8N-API-KEY"
    timeout_seconds: float = 120.0


class CredentialsConfig(BaseModel):
    """Platform credential and customer key encryption settings."""

    platform_api_key: Optional[str] = None
    encryption_secret: Optional[str] = None
    default_provider: str = DEFAULT_PROVIDER


class InputsConfig(BaseModel):
    timeout_minutes: int = DEFAULT_INPUT_TIMEOUT_MINUTES
    expiring_window_minutes: int = DEFAULT_EXPIRING_WINDOW_MINUTES


class CleanupConfig(BaseModel):
    """Settings for the expiry cleanup sweep."""

    enabled: bool = False
    interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    retention_days: int = DEFAULT_RETENTION_DAYS


class AuthConfig(BaseModel):
    jwt_secret: Optional[str] = None
    algorithm: str = "HS256"


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    database_url: str = "sqlite+aiosqlite:///flowgate.db"
    engine: EngineConfig = EngineConfig()
    credentials: CredentialsConfig = CredentialsConfig()
    inputs: InputsConfig = InputsConfig()
    cleanup: CleanupConfig = CleanupConfig()
    auth: AuthConfig = AuthConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWGATE_CONFIG env
            variable or 'config.yaml' in the current directory.

    Environment variables override file values for secrets and endpoints.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    env_db_url = os.getenv("FLOWGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_backend = os.getenv("FLOWGATE_ENGINE")
    if env_backend:
        config.engine.backend = env_backend.lower()  # type: ignore[assignment]
    if os.getenv("ENGINE_BASE_URL"):
        config.engine.base_url = os.environ["ENGINE_BASE_URL"]
    if os.getenv("ENGINE_API_KEY"):
        config.engine.api_key = os.environ["ENGINE_API_KEY"]

    if os.getenv("PLATFORM_API_KEY"):
        config.credentials.platform_api_key = os.environ["PLATFORM_API_KEY"]
    if os.getenv("API_KEY_ENCRYPTION_SECRET"):
        config.credentials.encryption_secret = os.environ["API_KEY_ENCRYPTION_SECRET"]

    if os.getenv("FLOWGATE_JWT_SECRET"):
        config.auth.jwt_secret = os.environ["FLOWGATE_JWT_SECRET"]
    if os.getenv("FLOWGATE_LOG_LEVEL"):
        config.log_level = os.environ["FLOWGATE_LOG_LEVEL"]
    return config
