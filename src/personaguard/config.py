"""
Centralized configuration management for PersonaGuard.

Provides type-safe configuration handling using Pydantic BaseSettings.
Every setting can be overridden through ``PERSONAGUARD_*`` environment
variables; a JSON file may be loaded for deployment-wide defaults.
"""

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .util.errors import ConfigurationError
from .util.log import get_logger

logger = get_logger(__name__)


class ValidationConfig(BaseSettings):
    """Content and structured-document validation limits."""

    max_content_length: int = Field(default=500_000)
    severity_threshold: str = Field(default="high")
    max_sanitize_passes: int = Field(default=16)
    max_search_query_length: int = Field(default=200)
    max_url_length: int = Field(default=2048)

    # Front-matter limits
    max_yaml_bytes: int = Field(default=64 * 1024)
    max_document_bytes: int = Field(default=1024 * 1024)
    max_alias_ratio: int = Field(default=5)
    max_aliases: int = Field(default=50)
    max_expanded_nodes: int = Field(default=10_000)

    @field_validator("severity_threshold")
    @classmethod
    def validate_threshold(cls, v):
        """Threshold must be a rejecting severity level."""
        v = v.lower()
        if v not in ("low", "medium", "high", "critical"):
            raise ValueError(f"severity_threshold must be one of low/medium/high/critical, got {v!r}")
        return v

    @field_validator("max_content_length", "max_sanitize_passes", "max_yaml_bytes", "max_document_bytes",
                     "max_expanded_nodes")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("limit must be positive")
        return v

    model_config = {"env_prefix": "PERSONAGUARD_VALIDATION_"}


class RateLimitConfig(BaseSettings):
    """Default token-bucket parameters for keys without a preset."""

    capacity: int = Field(default=60)
    window_seconds: float = Field(default=3600.0)
    min_delay_seconds: float = Field(default=0.0)

    @field_validator("capacity")
    @classmethod
    def validate_capacity(cls, v):
        if v < 1:
            raise ValueError("capacity must be at least 1")
        return v

    model_config = {"env_prefix": "PERSONAGUARD_RATE_"}


class CredentialConfig(BaseSettings):
    """Credential source and remote scope-check settings."""

    env_var: str = Field(default="PERSONAGUARD_GITHUB_TOKEN")
    api_url: str = Field(default="https://api.github.com")
    timeout_seconds: float = Field(default=10.0)
    cache_ttl_seconds: float = Field(default=3600.0)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v):
        if not v.startswith("https://"):
            raise ValueError("api_url must use https")
        return v.rstrip("/")

    model_config = {"env_prefix": "PERSONAGUARD_CREDENTIAL_"}


class PathConfig(BaseSettings):
    """Persona storage confinement."""

    persona_root: Path = Field(default=Path("./personas"))
    allowed_extensions: list[str] = Field(default=[".md", ".markdown", ".txt", ".yml", ".yaml"])
    max_file_bytes: int = Field(default=1024 * 1024)

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def parse_extensions(cls, v):
        """Parse comma-separated extensions."""
        if isinstance(v, str):
            v = [ext.strip() for ext in v.split(",") if ext.strip()]
        return [ext if ext.startswith(".") else f".{ext}" for ext in v]

    model_config = {"env_prefix": "PERSONAGUARD_PATH_"}


class AuditConfig(BaseSettings):
    """Static audit settings."""

    excluded_dirs: list[str] = Field(
        default=["node_modules", ".git", "dist", "build", "__pycache__", ".venv", "venv", ".tox"]
    )
    project_markers: list[str] = Field(
        default=["pyproject.toml", "package.json", "setup.cfg", ".git"]
    )
    max_workers: int = Field(default=4)
    max_file_bytes: int = Field(default=2 * 1024 * 1024)
    fail_on: Literal["critical", "high"] = Field(default="critical")

    @field_validator("excluded_dirs", "project_markers", mode="before")
    @classmethod
    def parse_list(cls, v):
        """Parse comma-separated lists."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v):
        """Validate max workers is reasonable."""
        if v <= 0:
            raise ValueError("max_workers must be positive")
        if v > 32:
            raise ValueError("max_workers should not exceed 32")
        return v

    model_config = {"env_prefix": "PERSONAGUARD_AUDIT_"}


class SecurityLogConfig(BaseSettings):
    """Security event ring buffer and optional persistence."""

    capacity: int = Field(default=1000)
    persist_path: Path | None = Field(default=None)

    model_config = {"env_prefix": "PERSONAGUARD_SECURITY_LOG_"}


class LoggingConfig(BaseSettings):
    """Application logging configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_format: Literal["standard", "json"] = Field(default="standard")
    log_file: Path | None = Field(default=None)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    model_config = {"env_prefix": "PERSONAGUARD_"}


class PersonaGuardConfig(BaseSettings):
    """Main configuration aggregating all subsystems."""

    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    paths: PathConfig = Field(default_factory=PathConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    security_log: SecurityLogConfig = Field(default_factory=SecurityLogConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "PERSONAGUARD_"}

    @classmethod
    def load_from_env(cls) -> "PersonaGuardConfig":
        """Load configuration from environment variables."""
        try:
            config = cls()
        except ValueError as e:
            logger.error("Failed to load configuration from environment: %s", e)
            raise ConfigurationError("environment", str(e), cause=e) from e
        logger.debug("Configuration loaded from environment")
        return config

    @classmethod
    def load_from_file(cls, config_file: Path) -> "PersonaGuardConfig":
        """Load configuration from a JSON file.

        Args:
            config_file: Path to configuration file

        Returns:
            Loaded configuration
        """
        try:
            with open(config_file, encoding="utf-8") as f:
                config_data = json.load(f)
            return cls(**config_data)
        except (OSError, json.JSONDecodeError, ValueError) as e:
            logger.error("Failed to load configuration from %s: %s", config_file, e)
            raise ConfigurationError(str(config_file), str(e), cause=e) from e

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


_global_config: PersonaGuardConfig | None = None


def get_config() -> PersonaGuardConfig:
    """Get the global configuration instance.

    Returns:
        Global configuration instance
    """
    global _global_config
    if _global_config is None:
        _global_config = PersonaGuardConfig.load_from_env()
    return _global_config


def set_config(config: PersonaGuardConfig) -> None:
    """Set the global configuration instance.

    Args:
        config: Configuration to set as global
    """
    global _global_config
    _global_config = config
    logger.info("Global configuration updated")


def reset_config() -> None:
    """Drop the cached configuration so the next access reloads it."""
    global _global_config
    _global_config = None
