"""
Tests for error handling and error utilities.

Tests error context creation, error type classification, and error reporting.
"""

from personaguard.util.errors import (
    AuditCritical,
    CommandRejected,
    ConfigurationError,
    ErrorCategory,
    ErrorCollector,
    ErrorContext,
    ErrorSeverity,
    PathViolation,
    PatternRejected,
    PersonaGuardError,
    RateLimited,
    RecoveryStrategy,
    ScopeInsufficient,
    SecurityError,
    StructuredParseError,
    ValidationRejected,
    create_error_context,
    format_exception_chain,
)


class TestPersonaGuardError:
    """Test PersonaGuardError base class functionality."""

    def test_basic_error_creation(self):
        """Test basic error creation with message."""
        error = PersonaGuardError("Test error message")

        assert str(error).startswith("[MEDIUM] logic: Test error message")
        assert error.message == "Test error message"
        assert error.severity == ErrorSeverity.MEDIUM
        assert error.category == ErrorCategory.LOGIC

    def test_error_with_context(self):
        """Test error creation with context data."""
        context = ErrorContext(component="test", operation="test_op", file_path="test.py", line_number=42)
        error = PersonaGuardError("Test error", context=context)

        assert error.context.component == "test"
        assert "Component: test" in str(error)

    def test_to_dict(self):
        """Structured form carries classification and cause."""
        cause = OSError("disk gone")
        error = PersonaGuardError("wrapped", cause=cause, suggestions=["retry"])
        data = error.to_dict()

        assert data["error_type"] == "PersonaGuardError"
        assert data["cause"] == "disk gone"
        assert data["suggestions"] == ["retry"]
        assert data["recovery_strategy"] == RecoveryStrategy.ABORT.value


class TestSecurityErrors:
    """Classification of the security error family."""

    def test_security_error_defaults(self):
        """Security errors default to high severity and abort."""
        error = SecurityError("blocked")
        assert error.severity == ErrorSeverity.HIGH
        assert error.recovery_strategy == RecoveryStrategy.ABORT

    def test_validation_rejected_keeps_pattern_ids(self):
        """Only pattern ids are attached, never the payload."""
        error = ValidationRejected("blocked", severity_level="critical", matched_patterns=["role-elevation"])
        assert error.matched_patterns == ["role-elevation"]
        assert error.details["severity_level"] == "critical"

    def test_structured_parse_error_prefix(self):
        """Structured errors are validation rejections with a fixed prefix."""
        error = StructuredParseError("bad tag")
        assert isinstance(error, ValidationRejected)
        assert error.message == "Structured document rejected: bad tag"

    def test_rate_limited_is_recoverable(self):
        """Rate limiting suggests falling back rather than aborting."""
        error = RateLimited("github_api", 1500)
        assert error.retry_after_ms == 1500
        assert error.category == ErrorCategory.RATE_LIMIT
        assert error.recovery_strategy == RecoveryStrategy.FALLBACK

    def test_path_violation_repr_path(self):
        """Paths are stored through repr so control bytes stay visible."""
        error = PathViolation("bad", path="a\x00b")
        assert error.details["path"] == repr("a\x00b")
        assert error.category == ErrorCategory.FILESYSTEM

    def test_command_rejected_message(self):
        """Command refusals name the executable."""
        error = CommandRejected("rm", "executable not in allow-list")
        assert "rm" in error.message
        assert error.category == ErrorCategory.EXECUTION

    def test_scope_insufficient(self):
        """Missing scopes are exposed."""
        error = ScopeInsufficient("nope", missing_scopes=["repo"])
        assert error.missing_scopes == ["repo"]
        assert error.category == ErrorCategory.PERMISSION

    def test_audit_critical_escalates(self):
        """Audit failures escalate."""
        error = AuditCritical("2 findings", finding_count=2)
        assert error.recovery_strategy == RecoveryStrategy.ESCALATE
        assert error.details["finding_count"] == 2

    def test_pattern_rejected_is_configuration_error(self):
        """Pattern refusals surface as configuration errors."""
        error = PatternRejected("p1", "high", ["nested_quantifier"])
        assert isinstance(error, ConfigurationError)
        assert error.details["hazards"] == ["nested_quantifier"]


class TestErrorCollector:
    """Aggregation for batch operations."""

    def test_collects_by_severity(self):
        """High errors and lower warnings are kept apart."""
        collector = ErrorCollector()
        collector.add_error(PersonaGuardError("a", severity=ErrorSeverity.HIGH))
        collector.add_error(PersonaGuardError("b", severity=ErrorSeverity.LOW))

        assert collector.has_errors()
        assert collector.has_warnings()
        assert len(collector.all()) == 2

    def test_wraps_plain_exceptions(self):
        """Foreign exceptions are wrapped with the given context."""
        collector = ErrorCollector()
        context = create_error_context("auditor", "scan_file")
        collector.add_exception(ValueError("boom"), context)

        wrapped = collector.all()[0]
        assert wrapped.context.component == "auditor"
        assert isinstance(wrapped.cause, ValueError)
        assert collector.get_summary()["warning_count"] == 1


class TestFormatExceptionChain:
    """Traceback rendering."""

    def test_includes_exception_text(self):
        """The rendered chain names the exception."""
        try:
            raise KeyError("missing")
        except KeyError as e:
            rendered = format_exception_chain(e)
        assert "KeyError" in rendered
