"""
Bearer credential handling.

Tokens are read from a single environment variable and held only in
memory. Their full value never reaches a log record, an error message or
a persisted file: everything user-visible is built from ``redact``.
Remote scope checks use httpx with a hard timeout and fail closed.
"""

import hashlib
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

import httpx

from ..util.errors import ScopeInsufficient
from ..util.log import get_logger
from .events import SecurityEventType, SecurityLog
from .ratelimit import PRESETS, RateLimiter
from .severity import Severity

logger = get_logger(__name__)

DEFAULT_ENV_VAR = "PERSONAGUARD_GITHUB_TOKEN"
DEFAULT_API_URL = "https://api.github.com"


class CredentialPattern:
    """Represents a pattern for detecting credentials."""

    def __init__(self, name: str, pattern: str, description: str = ""):
        self.name = name
        self.pattern_string = pattern
        self.pattern = re.compile(pattern)
        self.description = description


# Accepted token formats, anchored
TOKEN_FORMATS = {
    "github_classic": re.compile(r"^ghp_[A-Za-z0-9]{36}$"),
    "github_oauth": re.compile(r"^gho_[A-Za-z0-9]{36}$"),
    "github_app": re.compile(r"^gh[usr]_[A-Za-z0-9]{36}$"),
    "github_fine_grained": re.compile(r"^github_pat_[A-Za-z0-9_]{82}$"),
}

# Credential-shaped substrings stripped from any outgoing message
REDACTION_PATTERNS = [
    CredentialPattern("github_token", r"gh[pousr]_[A-Za-z0-9_]{20,255}", "GitHub token"),
    CredentialPattern("github_fine_grained", r"github_pat_[A-Za-z0-9_]{20,255}", "GitHub fine-grained token"),
    CredentialPattern("aws_access_key", r"AKIA[0-9A-Z]{16}", "AWS Access Key ID"),
    CredentialPattern("slack_token", r"xox[baprs]-[0-9A-Za-z-]{10,255}", "Slack token"),
    CredentialPattern("google_api_key", r"AIza[0-9A-Za-z_-]{35}", "Google API key"),
    CredentialPattern("anthropic_api_key", r"sk-ant-[A-Za-z0-9_-]{20,255}", "Anthropic API key"),
    CredentialPattern("openai_api_key", r"sk-[A-Za-z0-9_-]{32,255}", "OpenAI API key"),
    CredentialPattern("jwt", r"eyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}", "JSON Web Token"),
]

# Header-style secrets: keep the label, redact the value
_HEADER_SECRET = re.compile(
    r"(?i)\b(authorization\s?[:=]\s?(?:bearer|token|basic)\s|x-api-key\s?[:=]\s?|token\s?[:=]\s?)([^\s,;\"']{8,})"
)

# Broader scopes that satisfy a narrower one
SCOPE_IMPLICATIONS = {
    "public_repo": {"repo"},
    "repo:status": {"repo"},
    "read:org": {"write:org", "admin:org"},
    "write:org": {"admin:org"},
    "read:user": {"user"},
    "user:email": {"user"},
    "read:packages": {"write:packages"},
}


def redact(token: str) -> str:
    """Return first 4 + '...' + last 4 characters, or a mask for short values."""
    if not token or len(token) <= 8:
        return "****"
    return f"{token[:4]}...{token[-4:]}"


def token_fingerprint(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def credential_kind(token: str) -> str | None:
    """Return the format name a token matches, or None."""
    for kind, pattern in TOKEN_FORMATS.items():
        if pattern.match(token):
            return kind
    return None


def safe_error_message(raw: str, token: str | None = None) -> str:
    """Strip every credential-shaped substring from ``raw``.

    Known patterns are redacted whether or not ``token`` is supplied; a
    supplied token is additionally removed verbatim.
    """
    message = raw
    if token:
        message = message.replace(token, redact(token))
    for cred in REDACTION_PATTERNS:
        message = cred.pattern.sub(lambda m: redact(m.group(0)), message)
    return _HEADER_SECRET.sub(lambda m: m.group(1) + redact(m.group(2)), message)


def scope_satisfied(required: str, granted: Iterable[str]) -> bool:
    granted = set(granted)
    return required in granted or bool(SCOPE_IMPLICATIONS.get(required, set()) & granted)


@dataclass(frozen=True)
class Credential:
    """A bearer token held only in memory."""

    kind: str
    prefix: str
    scopes: tuple[str, ...] = ()
    _value: str = field(default="", repr=False, compare=False)

    def secret(self) -> str:
        """Return the raw token for an outgoing request header."""
        return self._value

    @property
    def fingerprint(self) -> str:
        return token_fingerprint(self._value)

    def __str__(self) -> str:
        return f"{self.kind}:{self.prefix}"


@dataclass
class _CacheEntry:
    scopes: frozenset[str] | None
    expires_at: float


class CredentialGuard:
    """Validates, redacts and scope-checks bearer credentials."""

    def __init__(
        self,
        security_log: SecurityLog,
        env_var: str = DEFAULT_ENV_VAR,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 10.0,
        cache_ttl_seconds: float = 3600.0,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.security_log = security_log
        self.env_var = env_var
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.rate_limiter = rate_limiter or RateLimiter(
            PRESETS["credential_validation"], security_log=security_log, name="credential_validation"
        )
        self._http_client = http_client
        self.clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_config(cls, security_log: SecurityLog, config, **kwargs) -> "CredentialGuard":
        """Build from a ``CredentialConfig``."""
        return cls(
            security_log,
            env_var=config.env_var,
            api_url=config.api_url,
            timeout_seconds=config.timeout_seconds,
            cache_ttl_seconds=config.cache_ttl_seconds,
            **kwargs,
        )

    def validate_format(self, token: str) -> bool:
        """Check a token against the known formats.

        Raises:
            RateLimited: too many checks in the current window
        """
        self.rate_limiter.require("format")
        return credential_kind(token or "") is not None

    def redact(self, token: str) -> str:
        return redact(token)

    def safe_error_message(self, raw: str, token: str | None = None) -> str:
        return safe_error_message(raw, token)

    def get_credential(self, env_var: str | None = None) -> Credential | None:
        """Load the credential from its environment variable.

        Returns None when the variable is unset or malformed.
        """
        name = env_var or self.env_var
        token = os.environ.get(name, "").strip()
        if not token:
            return None

        kind = credential_kind(token)
        if kind is None:
            self.security_log.record(
                SecurityEventType.CREDENTIAL_INVALID,
                Severity.MEDIUM,
                "credential_guard",
                {"env_var": name, "prefix": redact(token)},
            )
            logger.warning("Credential in %s has an unrecognized format", name)
            return None

        self.security_log.record(
            SecurityEventType.CREDENTIAL_LOADED,
            Severity.NONE,
            "credential_guard",
            {"env_var": name, "kind": kind, "prefix": redact(token)},
        )
        return Credential(kind=kind, prefix=redact(token), _value=token)

    def check_scopes(self, token: str, required: Iterable[str]) -> frozenset[str] | None:
        """Verify ``token`` grants every scope in ``required``.

        Returns the granted scopes, or None when the endpoint does not
        report scopes (fine-grained tokens).

        Raises:
            ScopeInsufficient: scopes missing, endpoint failure or timeout
            RateLimited: too many remote checks in the current window
        """
        required = list(required)
        fingerprint = token_fingerprint(token)
        granted = self._cached(fingerprint)

        if granted is _MISS:
            self.rate_limiter.require("scopes")
            granted = self._fetch_scopes(token)
            with self._cache_lock:
                self._cache[fingerprint] = _CacheEntry(granted, self.clock() + self.cache_ttl_seconds)

        if granted is not None:
            missing = [scope for scope in required if not scope_satisfied(scope, granted)]
            if missing:
                raise self._scope_failure(token, f"missing scopes: {', '.join(missing)}", missing)

        self.security_log.record(
            SecurityEventType.SCOPE_CHECK_PASSED,
            Severity.NONE,
            "credential_guard",
            {"prefix": redact(token), "required": required},
        )
        return granted

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def _cached(self, fingerprint: str):
        with self._cache_lock:
            entry = self._cache.get(fingerprint)
            if entry is None:
                return _MISS
            if entry.expires_at <= self.clock():
                del self._cache[fingerprint]
                return _MISS
            return entry.scopes

    def _fetch_scopes(self, token: str) -> frozenset[str] | None:
        client = self._http_client or httpx.Client(timeout=self.timeout_seconds)
        try:
            response = client.get(
                f"{self.api_url}/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/vnd.github+json",
                },
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException:
            raise self._scope_failure(token, f"identity check timed out after {self.timeout_seconds}s") from None
        except httpx.HTTPError as e:
            raise self._scope_failure(token, f"identity endpoint unreachable ({type(e).__name__})") from None
        finally:
            if self._http_client is None:
                client.close()

        if response.status_code != 200:
            # Body is never included; it may echo request headers
            raise self._scope_failure(token, f"identity check failed with status {response.status_code}")

        header = response.headers.get("x-oauth-scopes")
        if header is None:
            return None
        return frozenset(s.strip() for s in header.split(",") if s.strip())

    def _scope_failure(self, token: str, reason: str, missing: list[str] | None = None) -> ScopeInsufficient:
        reason = safe_error_message(reason, token)
        self.security_log.record(
            SecurityEventType.SCOPE_CHECK_FAILED,
            Severity.HIGH,
            "credential_guard",
            {"prefix": redact(token), "reason": reason},
        )
        logger.warning("Scope check failed for %s: %s", redact(token), reason)
        return ScopeInsufficient(
            f"Credential {redact(token)} rejected: {reason}", missing_scopes=missing
        )


_MISS = object()
