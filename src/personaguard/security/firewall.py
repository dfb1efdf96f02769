"""
Validator API consumed by persona storage, the marketplace client and
the sharer.

``SecurityFirewall`` wires every guard to one ``SecurityLog`` and exposes
the operations collaborators call before storing or displaying anything
that came from outside the process.
"""

import ipaddress
import re
from pathlib import Path
from typing import Sequence, Union
from urllib.parse import unquote_plus, urlsplit

from ..config import PersonaGuardConfig, get_config
from ..util.errors import ValidationRejected
from ..util.log import get_logger
from .commands import CommandGuard
from .content import ContentValidator, Verdict
from .credentials import Credential, CredentialGuard, redact
from .events import SecurityEventType, SecurityLog
from .paths import PathGuard
from .patterns import GENERAL, PERSONA_NAME, SEARCH_QUERY, URL
from .ratelimit import RateDecision, RateLimiter, RateLimitPolicy
from .severity import Severity
from .structured import PersonaDocument, SecureStructuredParser
from .unicode import IssueKind, UnicodeNormalizer

logger = get_logger(__name__)

BLOCKED_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "metadata.google.internal"})

COLLECTION_PATH = "collection-path"
EDIT_FIELD = "edit-field"

MAX_IDENTIFIER_LENGTH = 100
MIN_SEARCH_QUERY_LENGTH = 2
MAX_COLLECTION_PATH_LENGTH = 500

EDITABLE_FIELDS = ("name", "description", "category", "instructions", "triggers", "version", "author", "tags")

TRAVERSAL_MARKERS = (
    "..", "./", "/../", "\\", "%2e%2e", "%2e%2e%2f", "%2e%2e%5c", "%252e%252e",
    "..%2f", "..%5c", "..../", "..;/",
)

_COLLECTION_PATH_BAD_CHAR = re.compile(r"[^A-Za-z0-9/._-]")


class SecurityFirewall:
    """Single entry point for input validation decisions."""

    def __init__(
        self,
        config: PersonaGuardConfig | None = None,
        security_log: SecurityLog | None = None,
        credential_guard: CredentialGuard | None = None,
    ):
        self.config = config or get_config()
        self.security_log = security_log or SecurityLog(
            capacity=self.config.security_log.capacity,
            persist_path=self.config.security_log.persist_path,
        )

        self.normalizer = UnicodeNormalizer()
        self.content_validator = ContentValidator.from_config(self.security_log, self.config.validation)
        self.parser = SecureStructuredParser.from_config(self.content_validator, self.config.validation)
        self.path_guard = PathGuard(
            self.security_log,
            root=self.config.paths.persona_root,
            allowed_extensions=self.config.paths.allowed_extensions,
            max_file_bytes=self.config.paths.max_file_bytes,
        )
        self.command_guard = CommandGuard(self.security_log)
        self.rate_limiter = RateLimiter(
            RateLimitPolicy(
                capacity=self.config.rate_limit.capacity,
                window_seconds=self.config.rate_limit.window_seconds,
                min_delay_seconds=self.config.rate_limit.min_delay_seconds,
            ),
            security_log=self.security_log,
        )
        self.credential_guard = credential_guard or CredentialGuard.from_config(
            self.security_log, self.config.credentials
        )

    def validate_content(self, text: str, context: str = GENERAL) -> Verdict:
        return self.content_validator.validate(text, context)

    def normalize_unicode(self, text: str) -> tuple[str, tuple[IssueKind, ...]]:
        result = self.normalizer.normalize(text)
        if result.issues:
            self.security_log.record(
                SecurityEventType.UNICODE_ISSUE,
                result.severity,
                "unicode_normalizer",
                {"issues": [i.value for i in result.issues]},
            )
        return result.normalized, result.issues

    def parse_persona(self, document: str) -> PersonaDocument:
        return self.parser.parse(document)

    def resolve_path(self, candidate: Union[str, Path], root: Union[str, Path, None] = None) -> Path:
        return self.path_guard.resolve(candidate, root)

    def is_safe_command(self, executable: str, args: Sequence[str]) -> bool:
        return self.command_guard.is_safe(executable, args)

    def check_rate(self, key: str) -> RateDecision:
        return self.rate_limiter.check_limit(key)

    def get_credential(self, env_var: str | None = None) -> Credential | None:
        return self.credential_guard.get_credential(env_var)

    def redact(self, token: str) -> str:
        return redact(token)

    def validate_persona_identifier(self, identifier: str) -> str:
        """Return a sanitized persona name or filename.

        Raises:
            ValidationRejected: empty, too long, blocked, or nothing left after sanitizing
        """
        if not identifier or not identifier.strip():
            raise self._rejected(PERSONA_NAME, "persona identifier must be a non-empty string")
        if len(identifier) > MAX_IDENTIFIER_LENGTH:
            raise self._rejected(PERSONA_NAME, f"persona identifier exceeds {MAX_IDENTIFIER_LENGTH} characters")

        sanitized = self.content_validator.require_safe(identifier.strip(), PERSONA_NAME).strip()
        if not sanitized:
            raise self._rejected(PERSONA_NAME, "persona identifier contains only invalid characters")
        return sanitized

    def validate_search_query(self, query: str) -> str:
        """Return a sanitized search query.

        Raises:
            ValidationRejected: query too short, too long, blocked or empty once sanitized
        """
        limit = self.config.validation.max_search_query_length
        if len(query) > limit:
            raise self._rejected(SEARCH_QUERY, f"search query exceeds {limit} characters", Severity.MEDIUM)
        if len(query.strip()) < MIN_SEARCH_QUERY_LENGTH:
            raise self._rejected(
                SEARCH_QUERY, f"search query shorter than {MIN_SEARCH_QUERY_LENGTH} characters", Severity.LOW
            )

        sanitized = self.content_validator.require_safe(query.strip(), SEARCH_QUERY).strip()
        if not sanitized:
            raise self._rejected(SEARCH_QUERY, "search query contains only invalid characters", Severity.LOW)
        return sanitized

    def validate_collection_path(self, path: str) -> str:
        """Check a repository-relative path in the persona collection.

        Only ``[A-Za-z0-9/._-]`` is allowed, and traversal sequences are
        refused in both the raw and the URL-decoded form.

        Raises:
            ValidationRejected: empty, too long, bad character or traversal
        """
        if not path:
            raise self._rejected(COLLECTION_PATH, "collection path must be a non-empty string")
        if len(path) > MAX_COLLECTION_PATH_LENGTH:
            raise self._rejected(
                COLLECTION_PATH, f"collection path exceeds {MAX_COLLECTION_PATH_LENGTH} characters"
            )

        bad = _COLLECTION_PATH_BAD_CHAR.search(path)
        if bad:
            raise self._rejected(
                COLLECTION_PATH, f"invalid character {bad.group()!r} at position {bad.start() + 1}"
            )

        decoded = unquote_plus(path).lower()
        lowered = path.lower()
        for marker in TRAVERSAL_MARKERS:
            if marker in lowered or marker in decoded:
                raise self._rejected(COLLECTION_PATH, "path traversal not allowed in collection path")
        return path

    def validate_edit_field(self, field: str) -> str:
        """Return the normalized name of an editable persona field.

        Raises:
            ValidationRejected: the field is not editable
        """
        normalized = (field or "").strip().lower()
        if normalized not in EDITABLE_FIELDS:
            raise self._rejected(
                EDIT_FIELD, f"invalid field name, must be one of: {', '.join(EDITABLE_FIELDS)}", Severity.LOW
            )
        return normalized

    def validate_import_url(self, url: str) -> str:
        """Check a remote import URL.

        Only https URLs to public hosts are accepted; embedded credentials
        and private, loopback or link-local addresses are refused.

        Raises:
            ValidationRejected: URL fails policy
        """
        limit = self.config.validation.max_url_length
        if len(url) > limit:
            raise self._url_rejected(f"URL exceeds {limit} characters")

        verdict = self.content_validator.validate(url, URL)
        if not verdict.accepted or verdict.matched_patterns:
            raise self._url_rejected("URL contains blocked content", list(verdict.matched_patterns))

        try:
            parts = urlsplit(url)
            hostname = parts.hostname
        except ValueError as e:
            raise self._url_rejected("URL could not be parsed") from e

        if parts.scheme != "https":
            raise self._url_rejected("only https URLs are accepted")
        if parts.username or parts.password:
            raise self._url_rejected("URL must not embed credentials")
        if not hostname:
            raise self._url_rejected("URL has no host")

        host = hostname.lower().rstrip(".")
        if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
            raise self._url_rejected("URL targets a local host")
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            address = None
        if address is not None and not address.is_global:
            raise self._url_rejected("URL targets a non-public address")

        return url

    def _url_rejected(self, reason: str, pattern_ids: list[str] | None = None) -> ValidationRejected:
        return self._rejected(URL, f"Import URL rejected: {reason}", Severity.HIGH, pattern_ids)

    def _rejected(
        self,
        context: str,
        reason: str,
        severity: Severity = Severity.MEDIUM,
        pattern_ids: list[str] | None = None,
    ) -> ValidationRejected:
        self.security_log.record(
            SecurityEventType.CONTENT_REJECTED,
            severity,
            "firewall",
            {"context": context, "reason": reason, "pattern_ids": pattern_ids or []},
        )
        return ValidationRejected(reason, severity_level=severity.value, matched_patterns=pattern_ids)

    def close(self) -> None:
        self.security_log.close()
