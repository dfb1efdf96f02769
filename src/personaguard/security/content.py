"""
Content validation for untrusted text.

``ContentValidator.validate`` normalizes Unicode, evaluates every
applicable library pattern under its complexity-derived length ceiling,
and returns a ``Verdict`` carrying the maximum severity. The sanitized
form strips matched spans until no pattern matches; it is a fixpoint, so
sanitizing twice yields the same text.
"""

from dataclasses import dataclass

from ..util.errors import ValidationRejected
from ..util.log import get_logger
from .events import SecurityEventType, SecurityLog
from .patterns import GENERAL, PatternLibrary, default_library
from .regex_complexity import bounded_spans
from .severity import Severity, max_severity
from .unicode import ISSUE_SEVERITY, IssueKind, UnicodeNormalizer

logger = get_logger(__name__)

OVERSIZED_CONTENT = "oversized-content"


@dataclass(frozen=True)
class Verdict:
    """Outcome of validating one piece of text."""

    severity: Severity
    matched_patterns: tuple[str, ...]
    sanitized: str
    accepted: bool
    issues: tuple[IssueKind, ...] = ()
    context: str = GENERAL

    @property
    def rejected(self) -> bool:
        return not self.accepted

    @property
    def modified(self) -> bool:
        return bool(self.matched_patterns or self.issues)


class ContentValidator:
    """Classifies and sanitizes arbitrary text against a pattern library."""

    def __init__(
        self,
        security_log: SecurityLog,
        library: PatternLibrary | None = None,
        normalizer: UnicodeNormalizer | None = None,
        threshold: Severity = Severity.HIGH,
        max_content_length: int = 500_000,
        max_sanitize_passes: int = 16,
    ):
        self.security_log = security_log
        self.library = library if library is not None else default_library()
        self.normalizer = normalizer or UnicodeNormalizer()
        self.threshold = Severity.parse(threshold)
        self.max_content_length = max_content_length
        self.max_sanitize_passes = max_sanitize_passes

    @classmethod
    def from_config(cls, security_log: SecurityLog, config) -> "ContentValidator":
        """Build from a ``ValidationConfig``."""
        return cls(
            security_log,
            threshold=Severity.parse(config.severity_threshold),
            max_content_length=config.max_content_length,
            max_sanitize_passes=config.max_sanitize_passes,
        )

    def validate(self, text: str, context: str = GENERAL) -> Verdict:
        """Validate ``text`` for the given context tag."""
        if len(text) > self.max_content_length:
            verdict = Verdict(
                severity=Severity.HIGH,
                matched_patterns=(OVERSIZED_CONTENT,),
                sanitized="",
                accepted=False,
                context=context,
            )
            self._record(verdict, len(text))
            return verdict

        normalized = self.normalizer.normalize(text)
        matched, _ = self._scan(normalized.normalized, context)

        severity = max_severity(
            *(ISSUE_SEVERITY[i] for i in normalized.issues),
            *(self.library.get(pid).severity for pid in matched),
        )
        verdict = Verdict(
            severity=severity,
            matched_patterns=tuple(matched),
            sanitized=self.sanitize(text, context),
            accepted=severity < self.threshold,
            issues=normalized.issues,
            context=context,
        )
        self._record(verdict, len(text))
        return verdict

    def sanitize(self, text: str, context: str = GENERAL) -> str:
        """Normalize and strip matched spans until nothing matches.

        Fails closed to an empty string if no fixpoint is reached within
        ``max_sanitize_passes``.
        """
        if len(text) > self.max_content_length:
            return ""

        current = text
        for _ in range(self.max_sanitize_passes):
            normalized = self.normalizer.normalize(current).normalized
            _, spans = self._scan(normalized, context)
            stripped = _strip_spans(normalized, spans) if spans else normalized
            if stripped == current:
                return current
            current = stripped

        logger.warning(
            "Sanitization did not converge after %d passes for %s content",
            self.max_sanitize_passes,
            context,
            extra={"context": context},
        )
        return ""

    def require_safe(self, text: str, context: str = GENERAL) -> str:
        """Return sanitized text, or raise when the verdict is rejected.

        Raises:
            ValidationRejected: severity at or above the threshold
        """
        verdict = self.validate(text, context)
        if not verdict.accepted:
            raise ValidationRejected(
                f"{context} content blocked ({verdict.severity.value})",
                severity_level=verdict.severity.value,
                matched_patterns=list(verdict.matched_patterns),
            )
        return verdict.sanitized

    def _scan(self, text: str, context: str) -> tuple[list[str], list[tuple[int, int]]]:
        matched: list[str] = []
        spans: list[tuple[int, int]] = []
        for entry in self.library.entries_for(context):
            found = bounded_spans(entry.pattern.compiled, text, entry.profile, entry.pattern.id)
            if found:
                matched.append(entry.pattern.id)
                spans.extend(found)
        return matched, spans

    def _record(self, verdict: Verdict, length: int) -> None:
        if not verdict.accepted:
            event_type = SecurityEventType.CONTENT_REJECTED
        elif verdict.modified:
            event_type = SecurityEventType.CONTENT_SANITIZED
        else:
            event_type = SecurityEventType.CONTENT_ACCEPTED

        # Payload is never recorded, only its shape
        self.security_log.record(
            event_type,
            verdict.severity,
            "content_validator",
            {
                "context": verdict.context,
                "length": length,
                "pattern_ids": list(verdict.matched_patterns),
                "issues": [i.value for i in verdict.issues],
            },
        )


def _strip_spans(text: str, spans: list[tuple[int, int]]) -> str:
    """Remove the union of ``spans`` from ``text``."""
    merged: list[list[int]] = []
    for start, end in sorted(spans):
        if merged and start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])

    pieces = []
    cursor = 0
    for start, end in merged:
        pieces.append(text[cursor:start])
        cursor = end
    pieces.append(text[cursor:])
    return "".join(pieces)
