"""
Threat pattern library.

Patterns are data: each entry names a category, a severity and a regular
expression source. Admission runs the source through the complexity
analyzer, and any pattern classified high risk is refused, so every
pattern evaluated by the content validator has a bounded cost.
"""

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator

from ..util.errors import PatternRejected
from ..util.log import get_logger
from .regex_complexity import ComplexityProfile, RegexComplexityAnalyzer, RiskLevel
from .severity import Severity

logger = get_logger(__name__)


class PatternCategory(str, Enum):
    INJECTION = "injection"
    EXFILTRATION = "exfiltration"
    EXEC = "exec"
    PATH = "path"
    YAML = "yaml"
    UNICODE = "unicode"
    CREDENTIAL = "credential"
    DISCLOSURE = "disclosure"


# Context tags
PERSONA_BODY = "persona-body"
PERSONA_NAME = "persona-name"
METADATA_FIELD = "metadata-field"
DISPLAY_FIELD = "display-field"
SEARCH_QUERY = "search-query"
URL = "url"
GENERAL = "general"

SHORT_FIELD_CONTEXTS = frozenset({PERSONA_NAME, METADATA_FIELD, DISPLAY_FIELD, SEARCH_QUERY, GENERAL})


@dataclass(frozen=True)
class Pattern:
    """One detectable threat signature."""

    id: str
    category: PatternCategory
    severity: Severity
    source: str
    description: str = ""
    contexts: frozenset[str] | None = None
    compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.source, re.IGNORECASE))

    def applies_to(self, context: str) -> bool:
        return self.contexts is None or context in self.contexts


@dataclass(frozen=True)
class LibraryEntry:
    pattern: Pattern
    profile: ComplexityProfile


class PatternLibrary:
    """Ordered, admission-checked collection of patterns."""

    def __init__(
        self,
        patterns: Iterable[Pattern] = (),
        analyzer: RegexComplexityAnalyzer | None = None,
    ):
        self.analyzer = analyzer or RegexComplexityAnalyzer()
        self._entries: tuple[LibraryEntry, ...] = ()
        self._ids: set[str] = set()
        self._lock = threading.Lock()
        for pattern in patterns:
            self.add(pattern)

    def add(self, pattern: Pattern) -> LibraryEntry:
        """Admit a pattern after checking its backtracking risk.

        Raises:
            PatternRejected: pattern is high risk or its id is taken
        """
        profile = self.analyzer.analyze(pattern.source)
        if profile.risk is RiskLevel.HIGH:
            logger.error(
                "Refusing pattern %s: %s", pattern.id, ", ".join(h.value for h in profile.hazards)
            )
            raise PatternRejected(pattern.id, profile.risk.value, [h.value for h in profile.hazards])

        entry = LibraryEntry(pattern, profile)
        with self._lock:
            if pattern.id in self._ids:
                raise PatternRejected(pattern.id, profile.risk.value, ["duplicate id"])
            self._ids.add(pattern.id)
            # Readers iterate a snapshot tuple
            self._entries = self._entries + (entry,)
        return entry

    def entries_for(self, context: str) -> list[LibraryEntry]:
        return [e for e in self._entries if e.pattern.applies_to(context)]

    def get(self, pattern_id: str) -> Pattern | None:
        for entry in self._entries:
            if entry.pattern.id == pattern_id:
                return entry.pattern
        return None

    def __iter__(self) -> Iterator[LibraryEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _p(pattern_id, category, severity, source, description, contexts=None) -> Pattern:
    return Pattern(pattern_id, category, severity, source, description, contexts)


DEFAULT_PATTERNS = (
    # Role and instruction overrides
    _p("role-override-system", PatternCategory.INJECTION, Severity.CRITICAL,
       r"\[\s?(?:system|admin|assistant)\s?:[^\]]{0,500}\]?",
       "System/admin role marker"),
    _p("role-override-user", PatternCategory.INJECTION, Severity.HIGH,
       r"\[\s?user\s?:[^\]]{0,500}\]?",
       "User role marker"),
    _p("role-elevation", PatternCategory.INJECTION, Severity.CRITICAL,
       r"\b(?:you\s+are\s+now|act\s+as)\s+(?:an?\s+)?(?:admin|administrator|root|system|sudo)\b",
       "Role elevation request"),
    _p("instruction-override", PatternCategory.INJECTION, Severity.CRITICAL,
       r"\b(?:ignore|disregard|override)\s+(?:all\s+)?(?:previous|prior|above)\s+(?:instructions|rules|prompts)\b",
       "Instruction override phrase"),
    _p("instruction-reset", PatternCategory.INJECTION, Severity.HIGH,
       r"\bforget\s+(?:everything|all\s+(?:previous|prior)\s+instructions)\b",
       "Instruction reset phrase"),

    # Exfiltration
    _p("export-sensitive", PatternCategory.EXFILTRATION, Severity.CRITICAL,
       r"\bexport\s+all\s+(?:files|data|personas|tokens|credentials|secrets)\b",
       "Bulk export request"),
    _p("send-to-remote", PatternCategory.EXFILTRATION, Severity.HIGH,
       r"\bsend\s+[^\n]{0,80}\bto\s+https?://",
       "Send data to a remote endpoint"),
    _p("outbound-fetch", PatternCategory.EXFILTRATION, Severity.HIGH,
       r"\b(?:curl|wget)\s+[^\s]{0,10}\s?https?://",
       "Outbound fetch command"),

    # Code execution
    _p("command-substitution", PatternCategory.EXEC, Severity.HIGH,
       r"\$\([^)]{0,200}\)",
       "Shell command substitution"),
    _p("code-eval", PatternCategory.EXEC, Severity.HIGH,
       r"\b(?:eval|exec|__import__)\s?\(|\bos\.system\s?\(|\bsubprocess\.(?:run|call|check_output|popen)\b",
       "Dynamic code evaluation"),
    _p("child-process", PatternCategory.EXEC, Severity.HIGH,
       r"require\s?\(\s?['\"]child_process['\"]\s?\)",
       "Node child_process import"),
    _p("script-tag", PatternCategory.EXEC, Severity.HIGH,
       r"<\s?script\b",
       "HTML script tag"),
    _p("shell-metacharacters", PatternCategory.EXEC, Severity.MEDIUM,
       r"[;&|`$()]",
       "Shell metacharacter", SHORT_FIELD_CONTEXTS),

    # Paths
    _p("sensitive-system-path", PatternCategory.PATH, Severity.HIGH,
       r"/etc/(?:passwd|shadow|sudoers)\b|[/\\]\.ssh[/\\]",
       "Sensitive system file reference"),
    _p("path-traversal", PatternCategory.PATH, Severity.MEDIUM,
       r"\.\.[/\\]",
       "Relative path traversal"),
    _p("encoded-traversal", PatternCategory.PATH, Severity.MEDIUM,
       r"%2e%2e(?:%2f|%5c|/)",
       "URL-encoded path traversal"),

    # YAML constructor tags
    _p("yaml-code-tag", PatternCategory.YAML, Severity.CRITICAL,
       r"!!(?:python|ruby|js|java|perl|php)\b",
       "YAML tag constructing native objects"),

    # Credentials
    _p("github-token-literal", PatternCategory.CREDENTIAL, Severity.CRITICAL,
       r"\bgh[pousr]_[A-Za-z0-9]{36}\b|\bgithub_pat_[A-Za-z0-9_]{82}\b",
       "GitHub token literal"),
    _p("token-reference", PatternCategory.CREDENTIAL, Severity.MEDIUM,
       r"\b(?:GITHUB|GH|PERSONAGUARD_GITHUB)_TOKEN\b",
       "Token environment variable reference"),

    # Disclosure
    _p("credential-disclosure", PatternCategory.DISCLOSURE, Severity.HIGH,
       r"\b(?:list|show|print|reveal)\s+(?:me\s+)?all\s+(?:tokens|credentials|secrets|api\s+keys|passwords)\b",
       "Credential disclosure request"),
)


def default_library(analyzer: RegexComplexityAnalyzer | None = None) -> PatternLibrary:
    """Build a library holding the built-in patterns."""
    return PatternLibrary(DEFAULT_PATTERNS, analyzer=analyzer)
