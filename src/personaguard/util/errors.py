"""
Structured error handling for the security layer.

Provides a severity/category/recovery taxonomy and the concrete errors
raised by validators, guards and the auditor. Every error carries enough
context to be logged as a structured record without echoing untrusted
payloads or credential values.
"""

import inspect
import platform
import sys
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class ErrorSeverity(str, Enum):
    """Error severity levels for categorization and response."""
    CRITICAL = "critical"    # Run or operation cannot continue
    HIGH = "high"           # Operation blocked, surfaced to the user
    MEDIUM = "medium"       # Degraded result, operation continues
    LOW = "low"            # Minor issue, logged only
    INFO = "info"          # Informational


class ErrorCategory(str, Enum):
    """Error categories for systematic handling."""
    VALIDATION = "validation"         # Content or input rejected
    FILESYSTEM = "filesystem"         # File system confinement and access
    NETWORK = "network"               # Remote identity endpoint failures
    PERMISSION = "permission"         # Credential scopes and access control
    CONFIGURATION = "configuration"   # Settings and suppression files
    RATE_LIMIT = "rate_limit"         # Admission control
    EXECUTION = "execution"           # External command policy
    AUDIT = "audit"                   # Static audit gate failures
    LOGIC = "logic"                   # Internal logic errors


class RecoveryStrategy(str, Enum):
    """Recovery strategies for different error types."""
    RETRY = "retry"                   # Retry the operation later
    FALLBACK = "fallback"             # Use a degraded alternative path
    SKIP = "skip"                     # Skip and continue
    ABORT = "abort"                   # Stop the operation
    ESCALATE = "escalate"             # Require human intervention
    IGNORE = "ignore"                 # Log but continue


@dataclass
class ErrorContext:
    """Context information attached to an error."""
    component: str
    operation: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    file_path: Optional[str] = None
    line_number: Optional[int] = None
    function_name: Optional[str] = None
    python_version: Optional[str] = None
    platform: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)


class PersonaGuardError(Exception):
    """
    Base exception class with structured error handling.

    Carries severity, category and a recovery strategy so callers can
    decide between degrading, retrying and surfacing the failure.
    """

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.LOGIC,
        recovery_strategy: RecoveryStrategy = RecoveryStrategy.ABORT,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.recovery_strategy = recovery_strategy
        self.context = context or ErrorContext(component="unknown", operation="unknown")
        self.cause = cause
        self.details = details or {}
        self.suggestions = suggestions or []
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to structured dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "recovery_strategy": self.recovery_strategy.value,
            "timestamp": self.timestamp.isoformat(),
            "context": {
                "component": self.context.component,
                "operation": self.context.operation,
                "timestamp": self.context.timestamp.isoformat(),
                "file_path": self.context.file_path,
                "line_number": self.context.line_number,
                "function_name": self.context.function_name,
                "parameters": self.context.parameters,
                "state": self.context.state,
            },
            "details": self.details,
            "suggestions": self.suggestions,
            "cause": str(self.cause) if self.cause else None,
        }

    def __str__(self) -> str:
        """Human-readable error representation."""
        parts = [f"[{self.severity.value.upper()}] {self.category.value}: {self.message}"]
        if self.context.component != "unknown":
            parts.append(f"Component: {self.context.component}")
            parts.append(f"Operation: {self.context.operation}")
        if self.suggestions:
            parts.append("Suggestions:")
            parts.extend(f"  - {s}" for s in self.suggestions)
        return "\n".join(parts)


class ConfigurationError(PersonaGuardError):
    """Configuration and setup errors."""

    def __init__(self, config_key: str, message: str, **kwargs):
        super().__init__(
            f"Configuration error for '{config_key}': {message}",
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            recovery_strategy=RecoveryStrategy.ABORT,
            **kwargs
        )
        self.details["config_key"] = config_key


class PatternRejected(ConfigurationError):
    """A threat pattern failed the backtracking-risk admission check."""

    def __init__(self, pattern_id: str, risk: str, hazards: List[str], **kwargs):
        super().__init__(
            f"pattern:{pattern_id}",
            f"pattern classified {risk} risk ({', '.join(hazards) or 'no hazards'})",
            **kwargs
        )
        self.details["pattern_id"] = pattern_id
        self.details["hazards"] = list(hazards)


class SecurityError(PersonaGuardError):
    """Base class for security-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("recovery_strategy", RecoveryStrategy.ABORT)
        super().__init__(message, **kwargs)


class ValidationRejected(SecurityError):
    """Content blocked at or above the severity threshold.

    The message never includes the offending payload; only pattern ids
    and the computed severity are attached.
    """

    def __init__(self, message: str, severity_level: str = "high",
                 matched_patterns: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.details["severity_level"] = severity_level
        self.details["matched_patterns"] = list(matched_patterns or [])

    @property
    def matched_patterns(self) -> List[str]:
        return self.details["matched_patterns"]


class StructuredParseError(ValidationRejected):
    """Front-matter failed to parse or violated the document policy."""

    def __init__(self, message: str, **kwargs):
        super().__init__(f"Structured document rejected: {message}", **kwargs)


class RateLimited(SecurityError):
    """Admission denied by the token bucket; retry after the given delay."""

    def __init__(self, key: str, retry_after_ms: int, **kwargs):
        super().__init__(
            f"Rate limit exceeded for '{key}', retry in {retry_after_ms}ms",
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.RATE_LIMIT,
            recovery_strategy=RecoveryStrategy.FALLBACK,
            **kwargs
        )
        self.key = key
        self.retry_after_ms = retry_after_ms
        self.details["key"] = key
        self.details["retry_after_ms"] = retry_after_ms


class PathViolation(SecurityError):
    """A candidate path escaped its root or was malformed."""

    def __init__(self, message: str, path: Union[str, Path, None] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.FILESYSTEM, **kwargs)
        if path is not None:
            # repr keeps control characters such as NUL visible in logs
            self.details["path"] = repr(str(path))


class CommandRejected(SecurityError):
    """An executable or argument failed the command policy."""

    def __init__(self, executable: str, message: str, **kwargs):
        super().__init__(
            f"Command '{executable}' rejected: {message}",
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        self.details["executable"] = executable


class ScopeInsufficient(SecurityError):
    """A credential lacks the scopes an operation requires.

    Messages are built from redacted values only.
    """

    def __init__(self, message: str, missing_scopes: Optional[List[str]] = None, **kwargs):
        super().__init__(message, category=ErrorCategory.PERMISSION, **kwargs)
        self.missing_scopes = list(missing_scopes or [])
        self.details["missing_scopes"] = self.missing_scopes


class AuditCritical(PersonaGuardError):
    """Static audit found unsuppressed findings at the failing severity."""

    def __init__(self, message: str, finding_count: int = 0, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.AUDIT,
            recovery_strategy=RecoveryStrategy.ESCALATE,
            **kwargs
        )
        self.finding_count = finding_count
        self.details["finding_count"] = finding_count


# Error aggregation for batch operations

class ErrorCollector:
    """Collects and aggregates errors from batch operations."""

    def __init__(self):
        self.errors: List[PersonaGuardError] = []
        self.warnings: List[PersonaGuardError] = []

    def add_error(self, error: PersonaGuardError) -> None:
        """Add an error to the collection."""
        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.HIGH):
            self.errors.append(error)
        else:
            self.warnings.append(error)

    def add_exception(self, exc: Exception, context: ErrorContext) -> None:
        """Convert exception to PersonaGuardError and add to collection."""
        if isinstance(exc, PersonaGuardError):
            self.add_error(exc)
        else:
            self.add_error(PersonaGuardError(message=str(exc), context=context, cause=exc))

    def has_errors(self) -> bool:
        """Check if any errors were collected."""
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        """Check if any warnings were collected."""
        return len(self.warnings) > 0

    def all(self) -> List[PersonaGuardError]:
        return self.errors + self.warnings

    def get_summary(self) -> Dict[str, Any]:
        """Get summary of collected errors and warnings."""
        collected = self.all()
        return {
            "error_count": len(self.errors),
            "warning_count": len(self.warnings),
            "severities": {
                severity.value: len([e for e in collected if e.severity == severity])
                for severity in ErrorSeverity
            },
            "categories": {
                category.value: len([e for e in collected if e.category == category])
                for category in ErrorCategory
            },
        }


def create_error_context(component: str, operation: str, **kwargs) -> ErrorContext:
    """Create error context with automatic stack frame detection."""
    frame = inspect.currentframe()
    if frame and frame.f_back:
        caller_frame = frame.f_back
        return ErrorContext(
            component=component,
            operation=operation,
            file_path=caller_frame.f_code.co_filename,
            line_number=caller_frame.f_lineno,
            function_name=caller_frame.f_code.co_name,
            python_version=sys.version.split()[0],
            platform=platform.platform(),
            **kwargs
        )
    return ErrorContext(component=component, operation=operation, **kwargs)


def format_exception_chain(exc: BaseException) -> str:
    """Render an exception with its traceback for debug logging."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
