"""
Audit rules and the rule engine.

Rules are data. Pattern rules match one line at a time and semantic
rules inspect a whole file. Every pattern rule goes through the regex
complexity analyzer on registration, and line matching uses the same
length-bounded evaluation as the content validator.
"""

import re
import threading
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, Iterable

from ..security.credentials import safe_error_message
from ..security.regex_complexity import ComplexityProfile, RegexComplexityAnalyzer, RiskLevel, bounded_spans
from ..security.severity import Severity
from ..util.errors import PatternRejected
from ..util.log import get_logger
from .models import Finding

logger = get_logger(__name__)

CODE = "code"
DEPENDENCY = "dependency"
CONFIGURATION = "configuration"

CODE_EXTENSIONS = frozenset({".py", ".js", ".mjs", ".cjs", ".ts", ".tsx", ".jsx"})
CONFIG_EXTENSIONS = frozenset({".yml", ".yaml", ".json", ".toml", ".ini", ".cfg", ".conf", ".env"})

MAX_SNIPPET_LENGTH = 200


@dataclass(frozen=True, kw_only=True)
class Rule:
    """Metadata shared by every rule kind."""

    id: str
    name: str
    severity: Severity
    scanner: str
    description: str = ""
    cwe: str | None = None
    owasp: str | None = None
    remediation: str = ""
    references: tuple[str, ...] = ()
    confidence: str = "medium"


@dataclass(frozen=True, kw_only=True)
class PatternRule(Rule):
    """Line-oriented regex rule."""

    pattern: str
    flags: int = 0
    exclude: str | None = None
    extensions: frozenset[str] | None = None
    file_prefixes: tuple[str, ...] = ()
    compiled: re.Pattern = field(init=False, repr=False, compare=False)
    compiled_exclude: re.Pattern | None = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", re.compile(self.pattern, self.flags))
        object.__setattr__(
            self,
            "compiled_exclude",
            re.compile(self.exclude, re.IGNORECASE) if self.exclude else None,
        )

    def applies_to(self, relative_path: str) -> bool:
        path = PurePosixPath(relative_path)
        if self.extensions is None:
            return True
        if path.suffix.lower() in self.extensions:
            return True
        return any(path.name.startswith(prefix) for prefix in self.file_prefixes)


@dataclass(frozen=True, kw_only=True)
class SemanticRule(Rule):
    """Whole-file heuristic returning (line, snippet) hits."""

    check: Callable[[str, list[str]], list[tuple[int, str]]] = field(repr=False, compare=False)
    extensions: frozenset[str] | None = CODE_EXTENSIONS

    def applies_to(self, relative_path: str) -> bool:
        return self.extensions is None or PurePosixPath(relative_path).suffix.lower() in self.extensions


class RuleEngine:
    """Registry and evaluator for audit rules."""

    def __init__(self, rules: Iterable[Rule] = (), analyzer: RegexComplexityAnalyzer | None = None):
        self.analyzer = analyzer or RegexComplexityAnalyzer()
        self._rules: dict[str, Rule] = {}
        self._profiles: dict[str, ComplexityProfile] = {}
        self._lock = threading.Lock()
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> None:
        """Register a rule.

        Raises:
            PatternRejected: a pattern rule is high risk or the id is taken
        """
        profile = None
        if isinstance(rule, PatternRule):
            profile = self.analyzer.analyze(rule.pattern)
            if profile.risk is RiskLevel.HIGH:
                raise PatternRejected(rule.id, profile.risk.value, [h.value for h in profile.hazards])

        with self._lock:
            if rule.id in self._rules:
                raise PatternRejected(rule.id, "duplicate", ["duplicate id"])
            self._rules[rule.id] = rule
            if profile is not None:
                self._profiles[rule.id] = profile

    def get(self, rule_id: str) -> Rule:
        return self._rules[rule_id]

    def rules(self) -> list[Rule]:
        return list(self._rules.values())

    def rules_for(self, scanner: str) -> list[Rule]:
        return [r for r in self._rules.values() if r.scanner == scanner]

    def evaluate(self, scanner: str, relative_path: str, content: str) -> list[Finding]:
        """Run every applicable pattern and semantic rule over a file."""
        lines = content.splitlines()
        findings: list[Finding] = []

        for rule in self.rules_for(scanner):
            if isinstance(rule, PatternRule) and rule.applies_to(relative_path):
                profile = self._profiles[rule.id]
                for lineno, line in enumerate(lines, start=1):
                    if not bounded_spans(rule.compiled, line, profile, rule.id):
                        continue
                    if rule.compiled_exclude is not None and rule.compiled_exclude.search(line):
                        continue
                    findings.append(self.finding(rule, relative_path, lineno, line))
            elif isinstance(rule, SemanticRule) and rule.applies_to(relative_path):
                for lineno, snippet in rule.check(content, lines):
                    findings.append(self.finding(rule, relative_path, lineno, snippet))

        return findings

    def finding(self, rule: Rule | str, relative_path: str, line: int, snippet: str,
                message: str | None = None, scanner: str | None = None) -> Finding:
        """Build a finding from rule metadata.

        Snippets are truncated and scrubbed of credential-shaped values.
        """
        if isinstance(rule, str):
            rule = self.get(rule)
        return Finding(
            rule_id=rule.id,
            file=relative_path,
            line=line,
            severity=rule.severity,
            message=message or rule.name,
            snippet=safe_error_message(snippet.strip()[:MAX_SNIPPET_LENGTH]),
            cwe=rule.cwe,
            owasp=rule.owasp,
            remediation=rule.remediation,
            confidence=rule.confidence,
            scanner=scanner or rule.scanner,
        )


# Semantic heuristics

_PERSONA_CONTENT = re.compile(r"\bpersona\w{0,20}\b[^\n]{0,80}\b(?:content|body|instructions|prompt)\b", re.IGNORECASE)
_NORMALIZATION_MARKERS = re.compile(
    r"normaliz|UnicodeNormalizer|ContentValidator|validate_content|SecurityFirewall", re.IGNORECASE
)
_SECURITY_RAISE = re.compile(
    r"\b(?:raise|throw\s+new)\s+\w{0,40}(?:Security|Validation|Permission|Auth|Path)\w{0,20}(?:Error|Rejected|Violation|Denied)\b"
)
_AUDIT_MARKERS = re.compile(r"security_log|SecurityLog|\.record\s?\(|audit|logger\.|logging\.")
_FRONT_MATTER_PARSE = re.compile(r"\byaml\.(?:safe_)?load\w{0,4}\s?\(|\bfrontmatter\.|\bgray-?matter\b|\bmatter\s?\(")
_PERSONA_WORD = re.compile(r"\bpersona", re.IGNORECASE)
_STRUCTURED_MARKERS = re.compile(r"SecureStructuredParser|parse_persona|ContentValidator|validate_content")
_REMOTE_API = re.compile(r"api\.github\.com|\bOctokit\b")
_RATE_MARKERS = re.compile(r"RateLimiter|rate_limit|check_limit|check_rate|ratelimit", re.IGNORECASE)


def _first_hit(lines: list[str], pattern: re.Pattern) -> tuple[int, str] | None:
    for lineno, line in enumerate(lines, start=1):
        if pattern.search(line):
            return lineno, line
    return None


def _missing_normalization(content: str, lines: list[str]) -> list[tuple[int, str]]:
    hit = _first_hit(lines, _PERSONA_CONTENT)
    if hit and not _NORMALIZATION_MARKERS.search(content):
        return [hit]
    return []


def _missing_audit_logging(content: str, lines: list[str]) -> list[tuple[int, str]]:
    hit = _first_hit(lines, _SECURITY_RAISE)
    if hit and not _AUDIT_MARKERS.search(content):
        return [hit]
    return []


def _unvalidated_persona_content(content: str, lines: list[str]) -> list[tuple[int, str]]:
    hit = _first_hit(lines, _FRONT_MATTER_PARSE)
    if hit and _PERSONA_WORD.search(content) and not _STRUCTURED_MARKERS.search(content):
        return [hit]
    return []


def _missing_rate_limiting(content: str, lines: list[str]) -> list[tuple[int, str]]:
    hit = _first_hit(lines, _REMOTE_API)
    if hit and not _RATE_MARKERS.search(content):
        return [hit]
    return []


OWASP_REF = "https://owasp.org/Top10/"


def _cwe_ref(number: int) -> str:
    return f"https://cwe.mitre.org/data/definitions/{number}.html"


CODE_RULES = (
    PatternRule(
        id="OWASP-A01-001", name="World-writable file permissions", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-732", owasp="A01:2021",
        pattern=r"\bchmod\w{0,4}\s?\([^\n)]{0,200}\b0o?777\b|\bchmod\s+(?:-R\s+)?777\b",
        extensions=CODE_EXTENSIONS,
        remediation="Grant the narrowest permissions the file needs, e.g. 0o600 or 0o644.",
        references=(OWASP_REF, _cwe_ref(732)),
    ),
    PatternRule(
        id="OWASP-A02-001", name="Secret generated with a non-cryptographic RNG", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-338", owasp="A02:2021",
        pattern=r"\b(?:token|secret|password|nonce|salt)\w{0,20}\s?=\s?[^\n]{0,80}\b(?:random\.(?:random|randint|choice|choices|getrandbits)|Math\.random)\s?\(",
        flags=re.IGNORECASE,
        extensions=CODE_EXTENSIONS,
        remediation="Use the secrets module or crypto.randomBytes.",
        references=(OWASP_REF, _cwe_ref(338)),
    ),
    PatternRule(
        id="OWASP-A03-001", name="Dynamic code evaluation", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-95", owasp="A03:2021",
        pattern=r"(?<![\w.])eval\s?\(|\bnew\s+Function\s?\(|(?<![\w.])exec\s?\(",
        extensions=CODE_EXTENSIONS,
        remediation="Parse data with a dedicated parser instead of evaluating it as code.",
        references=(OWASP_REF, _cwe_ref(95)), confidence="high",
    ),
    PatternRule(
        id="OWASP-A04-001", name="Authorization enforced with assert", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-617", owasp="A04:2021",
        pattern=r"^\s{0,40}assert\b[^\n]{0,200}\b(?:is_admin|is_authenticated|is_authorized|authorized|has_permission|permissions?|role)\b",
        extensions=frozenset({".py"}),
        remediation="Raise an explicit error; asserts are stripped under python -O.",
        references=(OWASP_REF, _cwe_ref(617)),
    ),
    PatternRule(
        id="OWASP-A05-001", name="Debug mode enabled", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-489", owasp="A05:2021",
        pattern=r"\b(?:app\.run|run_server|uvicorn\.run)\s?\([^\n)]{0,200}\bdebug\s?=\s?True\b|\bDEBUG\s?=\s?True\b",
        extensions=CODE_EXTENSIONS,
        remediation="Read debug flags from configuration and default them to off.",
        references=(OWASP_REF, _cwe_ref(489)),
    ),
    PatternRule(
        id="OWASP-A06-001", name="Import of an obsolete insecure module", scanner=CODE,
        severity=Severity.LOW, cwe="CWE-1104", owasp="A06:2021",
        pattern=r"^\s{0,40}(?:import|from)\s+(?:telnetlib|ftplib|xmlrpc)\b|\brequire\s?\(\s?[\"'](?:node-serialize|request)[\"']",
        extensions=CODE_EXTENSIONS,
        remediation="Replace the module with a maintained alternative.",
        references=(OWASP_REF, _cwe_ref(1104)), confidence="low",
    ),
    PatternRule(
        id="OWASP-A07-001", name="Token signature verification disabled", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-347", owasp="A07:2021",
        pattern=r"[\"']verify_signature[\"']\s?:\s?False\b|\balgorithms?\s?=\s?\[?\s?[\"']none[\"']|\bjwt\.decode\s?\([^\n)]{0,200}\bverify\s?=\s?False\b",
        flags=re.IGNORECASE,
        extensions=CODE_EXTENSIONS,
        remediation="Verify signatures with an explicit algorithm allow-list.",
        references=(OWASP_REF, _cwe_ref(347)), confidence="high",
    ),
    PatternRule(
        id="OWASP-A08-001", name="Remote script piped to a shell", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-494", owasp="A08:2021",
        pattern=r"\b(?:curl|wget)\b[^\n|]{0,200}\|\s?(?:sudo\s+)?(?:ba|z)?sh\b",
        remediation="Download, verify a checksum, then execute.",
        references=(OWASP_REF, _cwe_ref(494)),
    ),
    PatternRule(
        id="OWASP-A09-001", name="Exception details returned to client", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-209", owasp="A09:2021",
        pattern=r"\breturn\b[^\n]{0,100}\bstr\s?\(\s?(?:e|err|exc|error)\s?\)|\bres\.(?:send|json)\s?\([^\n)]{0,100}\b(?:err|error)\.stack\b",
        extensions=CODE_EXTENSIONS,
        remediation="Log the exception server-side and return a generic error message.",
        references=(OWASP_REF, _cwe_ref(209)), confidence="low",
    ),
    PatternRule(
        id="OWASP-A10-001", name="Request-controlled outbound URL", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-918", owasp="A10:2021",
        pattern=r"\b(?:requests|httpx|urllib\.request)\.\w{1,12}\s?\([^\n)]{0,200}\b(?:req|request)\.(?:args|params|query|body|form)\b",
        extensions=CODE_EXTENSIONS,
        remediation="Validate outbound URLs against an allow-list and refuse private addresses.",
        references=(OWASP_REF, _cwe_ref(918)),
    ),
    PatternRule(
        id="CWE-22-001", name="Path traversal via request input", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-22", owasp="A01:2021",
        pattern=r"\b(?:open|readFile(?:Sync)?|writeFile(?:Sync)?|createReadStream|send_file|sendFile)\s?\([^\n)]{0,200}\b(?:req|request)\.(?:params|query|body|args|form|files)\b",
        extensions=CODE_EXTENSIONS,
        remediation="Resolve paths with PathGuard and confine them to a storage root.",
        references=(_cwe_ref(22),), confidence="high",
    ),
    PatternRule(
        id="CWE-78-001", name="OS command injection", scanner=CODE,
        severity=Severity.CRITICAL, cwe="CWE-78", owasp="A03:2021",
        pattern=r"\bos\.(?:system|popen)\s?\(|\bshell\s?=\s?True\b|\bchild_process\b[^\n]{0,100}\bexec(?:Sync)?\s?\(|\bexecSync\s?\(",
        extensions=CODE_EXTENSIONS,
        remediation="Spawn processes with an argument vector and no shell; validate with CommandGuard.",
        references=(_cwe_ref(78),), confidence="high",
    ),
    PatternRule(
        id="CWE-89-001", name="SQL built from string interpolation", scanner=CODE,
        severity=Severity.CRITICAL, cwe="CWE-89", owasp="A03:2021",
        pattern=(
            r"\b(?:SELECT|INSERT|UPDATE|DELETE)\b[^\n]{0,200}(?:[\"'`]\s?\+\s?[A-Za-z_]|\$\{|[\"']\s?%\s?\(?[A-Za-z_]|[\"']\s?\.format\s?\()"
            r"|\bf[\"'][^\"'\n]{0,200}\b(?:SELECT|INSERT|UPDATE|DELETE)\b[^\"'\n]{0,200}\{"
        ),
        extensions=CODE_EXTENSIONS,
        remediation="Use parameterized queries.",
        references=(_cwe_ref(89),),
    ),
    PatternRule(
        id="CWE-798-001", name="Hardcoded credential", scanner=CODE,
        severity=Severity.CRITICAL, cwe="CWE-798", owasp="A07:2021",
        pattern=r"\b(?:password|passwd|pwd|secret|api_?key|access_?token|auth_?token)\s?[:=]\s?[\"'][^\"'\s]{8,}[\"']",
        flags=re.IGNORECASE,
        exclude=r"example|placeholder|changeme|dummy|your[_-]|<[a-z_]+>|\$\{|xxxx|\*\*\*",
        extensions=CODE_EXTENSIONS,
        remediation="Load credentials from the environment or a secrets manager.",
        references=(_cwe_ref(798),),
    ),
    PatternRule(
        id="CWE-798-002", name="Credential literal", scanner=CODE,
        severity=Severity.CRITICAL, cwe="CWE-798", owasp="A07:2021",
        pattern=r"gh[pousr]_[A-Za-z0-9]{36}|github_pat_[A-Za-z0-9_]{82}|AKIA[0-9A-Z]{16}|-----BEGIN (?:RSA |EC |OPENSSH |DSA )?PRIVATE KEY-----",
        remediation="Revoke the credential and load it from the environment.",
        references=(_cwe_ref(798),), confidence="high",
    ),
    PatternRule(
        id="CWE-502-001", name="Unsafe deserialization", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-502", owasp="A08:2021",
        pattern=r"\bpickle\.loads?\s?\(|\bmarshal\.loads?\s?\(|\bshelve\.open\s?\(",
        extensions=CODE_EXTENSIONS,
        remediation="Deserialize untrusted data with a data-only format such as JSON.",
        references=(_cwe_ref(502),),
    ),
    PatternRule(
        id="CWE-327-001", name="Weak hash algorithm", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-327", owasp="A02:2021",
        pattern=r"\bhashlib\.(?:md5|sha1)\s?\(|\bcreateHash\s?\(\s?[\"'](?:md5|sha1)[\"']",
        flags=re.IGNORECASE,
        exclude=r"usedforsecurity\s?=\s?False",
        extensions=CODE_EXTENSIONS,
        remediation="Use SHA-256 or stronger.",
        references=(_cwe_ref(327),),
    ),
    PatternRule(
        id="CWE-295-001", name="TLS certificate verification disabled", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-295", owasp="A02:2021",
        pattern=r"\bverify\s?=\s?False\b|\brejectUnauthorized\s?:\s?false\b|NODE_TLS_REJECT_UNAUTHORIZED|\bCERT_NONE\b",
        extensions=CODE_EXTENSIONS,
        remediation="Keep certificate verification on; pin a CA bundle if needed.",
        references=(_cwe_ref(295),), confidence="high",
    ),
    PatternRule(
        id="PG-SEC-004", name="Credential passed to a log call", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-532", owasp="A09:2021",
        pattern=r"\b(?:logger|logging|log|console)\.(?:debug|info|warning|warn|error|exception|critical|log)\s?\([^\n]{0,200}\b(?:token|secret|password|api_key|apikey)\b",
        flags=re.IGNORECASE,
        exclude=r"redact|safe_error_message|fingerprint|prefix",
        extensions=CODE_EXTENSIONS,
        remediation="Log redact(token) or a fingerprint, never the value.",
        references=(_cwe_ref(532),), confidence="low",
    ),
    PatternRule(
        id="PG-SEC-005", name="YAML loaded without a safe loader", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-502", owasp="A08:2021",
        pattern=r"\byaml\.(?:unsafe_)?load(?:_all)?\s?\(",
        exclude=r"SafeLoader|RestrictedLoader|BaseLoader",
        extensions=CODE_EXTENSIONS,
        remediation="Use yaml.safe_load or SecureStructuredParser.",
        references=(_cwe_ref(502),), confidence="high",
    ),
    SemanticRule(
        id="PG-SEC-001", name="Persona content stored without Unicode normalization", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-176",
        check=_missing_normalization,
        remediation="Pass persona text through ContentValidator before storing it.",
        confidence="low",
    ),
    SemanticRule(
        id="PG-SEC-002", name="Security rejection without audit logging", scanner=CODE,
        severity=Severity.LOW, cwe="CWE-778", owasp="A09:2021",
        check=_missing_audit_logging,
        remediation="Record rejections in the SecurityLog.",
        confidence="low",
    ),
    SemanticRule(
        id="PG-SEC-003", name="Persona front-matter parsed without validation", scanner=CODE,
        severity=Severity.HIGH, cwe="CWE-20", owasp="A03:2021",
        check=_unvalidated_persona_content,
        remediation="Parse persona documents with SecureStructuredParser.",
    ),
    SemanticRule(
        id="PG-SEC-006", name="Remote API calls without rate limiting", scanner=CODE,
        severity=Severity.MEDIUM, cwe="CWE-770", owasp="A04:2021",
        check=_missing_rate_limiting,
        remediation="Gate outbound API calls with a RateLimiter preset.",
        confidence="low",
    ),
)

DEPENDENCY_RULES = (
    Rule(
        id="DEP-001", name="Unpinned dependency", scanner=DEPENDENCY,
        severity=Severity.MEDIUM, cwe="CWE-1104", owasp="A06:2021",
        remediation="Pin an exact version or a bounded range.",
    ),
    Rule(
        id="DEP-002", name="Dependency installed from VCS or URL", scanner=DEPENDENCY,
        severity=Severity.HIGH, cwe="CWE-829", owasp="A08:2021",
        remediation="Install from a package index with hash checking.",
    ),
    Rule(
        id="DEP-003", name="Open-ended version range", scanner=DEPENDENCY,
        severity=Severity.LOW, cwe="CWE-1104", owasp="A06:2021",
        remediation="Add an upper bound to the version range.",
    ),
)

CONFIG_RULES = (
    PatternRule(
        id="CFG-001", name="Debug mode enabled in configuration", scanner=CONFIGURATION,
        severity=Severity.MEDIUM, cwe="CWE-489", owasp="A05:2021",
        pattern=r"^\s{0,20}[\"']?debug[\"']?\s?[:=]\s?[\"']?(?:true|1|yes|on)\b",
        flags=re.IGNORECASE,
        extensions=CONFIG_EXTENSIONS, file_prefixes=(".env",),
        remediation="Disable debug mode outside development.",
    ),
    PatternRule(
        id="CFG-002", name="TLS verification disabled in configuration", scanner=CONFIGURATION,
        severity=Severity.HIGH, cwe="CWE-295", owasp="A02:2021",
        pattern=r"\b(?:verify_ssl|ssl_verify|tls_verify|verify|rejectUnauthorized)[\"']?\s?[:=]\s?[\"']?(?:false|0|no|off)\b",
        flags=re.IGNORECASE,
        extensions=CONFIG_EXTENSIONS, file_prefixes=(".env",),
        remediation="Keep certificate verification on.",
    ),
    PatternRule(
        id="CFG-003", name="Permissive CORS origin", scanner=CONFIGURATION,
        severity=Severity.MEDIUM, cwe="CWE-942", owasp="A05:2021",
        pattern=r"\b(?:cors\w{0,20}|allow_origins|allowed_origins|access-control-allow-origin)[\"']?\s?[:=]\s?[\[\"']{0,2}\*",
        flags=re.IGNORECASE,
        extensions=CONFIG_EXTENSIONS, file_prefixes=(".env",),
        remediation="List the exact origins allowed to call the service.",
    ),
    PatternRule(
        id="CFG-004", name="Secret value in configuration file", scanner=CONFIGURATION,
        severity=Severity.CRITICAL, cwe="CWE-798", owasp="A07:2021",
        pattern=r"\b(?:password|secret|token|api_?key)[\"']?\s?[:=]\s?[\"']?[A-Za-z0-9_/+=.-]{12,}",
        flags=re.IGNORECASE,
        exclude=r"\$\{|%\(|<|\{\{|example|changeme|placeholder|your[_-]",
        extensions=CONFIG_EXTENSIONS, file_prefixes=(".env",),
        remediation="Reference the secret from the environment instead of committing it.",
    ),
)


def default_rule_engine(analyzer: RegexComplexityAnalyzer | None = None) -> RuleEngine:
    """Build an engine holding the built-in rules."""
    return RuleEngine((*CODE_RULES, *DEPENDENCY_RULES, *CONFIG_RULES), analyzer=analyzer)
