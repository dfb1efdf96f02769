"""
Tests for configuration management.

Covers defaults, environment overrides, field validation and the global
accessor.
"""

import json

import pytest
from pydantic import ValidationError

from personaguard.config import (
    AuditConfig,
    CredentialConfig,
    PathConfig,
    PersonaGuardConfig,
    ValidationConfig,
    get_config,
    reset_config,
    set_config,
)
from personaguard.util.errors import ConfigurationError


class TestValidationConfig:
    """Validation limits."""

    def test_defaults(self):
        """Defaults match the documented limits."""
        config = ValidationConfig()
        assert config.max_content_length == 500_000
        assert config.severity_threshold == "high"
        assert config.max_sanitize_passes == 16
        assert config.max_search_query_length == 200
        assert config.max_expanded_nodes == 10_000

    def test_env_override(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("PERSONAGUARD_VALIDATION_MAX_CONTENT_LENGTH", "1000")
        monkeypatch.setenv("PERSONAGUARD_VALIDATION_SEVERITY_THRESHOLD", "MEDIUM")
        config = ValidationConfig()
        assert config.max_content_length == 1000
        assert config.severity_threshold == "medium"

    def test_rejects_unknown_threshold(self):
        """Threshold must name a rejecting level."""
        with pytest.raises(ValidationError):
            ValidationConfig(severity_threshold="none")

    def test_rejects_non_positive_limits(self):
        """Limits must be positive."""
        with pytest.raises(ValidationError):
            ValidationConfig(max_content_length=0)
        with pytest.raises(ValidationError):
            ValidationConfig(max_expanded_nodes=0)


class TestSubsystemConfigs:
    """Credential, path and audit settings."""

    def test_credential_api_url_must_be_https(self):
        """Plain-http identity endpoints are refused."""
        with pytest.raises(ValidationError):
            CredentialConfig(api_url="http://api.github.com")

    def test_extensions_from_comma_string(self):
        """Extensions accept a comma list and gain a leading dot."""
        config = PathConfig(allowed_extensions="md, .txt")
        assert config.allowed_extensions == [".md", ".txt"]

    def test_audit_fail_on_choices(self):
        """fail_on accepts only critical or high."""
        assert AuditConfig(fail_on="high").fail_on == "high"
        with pytest.raises(ValidationError):
            AuditConfig(fail_on="medium")

    def test_audit_max_workers_bounds(self):
        """Worker counts must be between 1 and 32."""
        with pytest.raises(ValidationError):
            AuditConfig(max_workers=0)
        with pytest.raises(ValidationError):
            AuditConfig(max_workers=64)


class TestPersonaGuardConfig:
    """Aggregate configuration and global accessor."""

    def test_load_from_file(self, tmp_path):
        """JSON files populate nested sections."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"validation": {"max_content_length": 42}}))

        config = PersonaGuardConfig.load_from_file(config_file)
        assert config.validation.max_content_length == 42

    def test_load_from_bad_file(self, tmp_path):
        """Malformed files raise ConfigurationError."""
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")
        with pytest.raises(ConfigurationError):
            PersonaGuardConfig.load_from_file(config_file)

    def test_to_dict_is_json_safe(self):
        """to_dict produces JSON-serializable data."""
        json.dumps(PersonaGuardConfig().to_dict())

    def test_global_accessors(self):
        """set_config replaces and reset_config drops the global instance."""
        custom = PersonaGuardConfig(validation=ValidationConfig(max_content_length=7))
        set_config(custom)
        assert get_config() is custom

        reset_config()
        assert get_config() is not custom
