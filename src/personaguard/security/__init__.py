"""
Input-validation firewall.

Every externally sourced string passes through these components before
business logic may store or display it.
"""

from .commands import CommandGuard, CommandResult
from .content import ContentValidator, Verdict
from .credentials import Credential, CredentialGuard, redact, safe_error_message
from .events import SecurityEvent, SecurityEventType, SecurityLog
from .firewall import SecurityFirewall
from .paths import PathGuard, safe_filename
from .patterns import Pattern, PatternCategory, PatternLibrary, default_library
from .ratelimit import PRESETS, RateDecision, RateLimiter, RateLimitPolicy
from .regex_complexity import ComplexityProfile, RegexComplexityAnalyzer, RiskLevel
from .severity import Severity, max_severity
from .structured import PersonaDocument, PersonaMetadata, SecureStructuredParser
from .unicode import IssueKind, NormalizationResult, UnicodeNormalizer

__all__ = [
    "CommandGuard",
    "CommandResult",
    "ComplexityProfile",
    "ContentValidator",
    "Credential",
    "CredentialGuard",
    "IssueKind",
    "NormalizationResult",
    "PathGuard",
    "Pattern",
    "PatternCategory",
    "PatternLibrary",
    "PersonaDocument",
    "PersonaMetadata",
    "PRESETS",
    "RateDecision",
    "RateLimiter",
    "RateLimitPolicy",
    "RegexComplexityAnalyzer",
    "RiskLevel",
    "SecureStructuredParser",
    "SecurityEvent",
    "SecurityEventType",
    "SecurityFirewall",
    "SecurityLog",
    "Severity",
    "UnicodeNormalizer",
    "Verdict",
    "default_library",
    "max_severity",
    "redact",
    "safe_error_message",
    "safe_filename",
]
