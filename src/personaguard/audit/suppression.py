"""
Suppression of known false positives.

A suppression names a rule id (or ``*``), an optional file glob relative
to the project root, and a mandatory reason. When several suppressions
match a finding, the most specific one is reported as the reason.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Sequence

import yaml

from ..security.regex_complexity import RegexComplexityAnalyzer, RiskLevel
from ..security.structured import RestrictedLoader
from ..util.errors import ConfigurationError, PatternRejected
from ..util.log import get_logger
from .models import Finding, SuppressedFinding

logger = get_logger(__name__)

ANY_RULE = "*"
DEFAULT_PROJECT_MARKERS = ("pyproject.toml", "package.json", ".git", "setup.cfg")

_GLOB_CHARS = re.compile(r"[*?]")


def glob_to_regex(glob: str, analyzer: RegexComplexityAnalyzer | None = None) -> re.Pattern:
    """Translate a path glob into an anchored regular expression.

    ``**/`` matches zero or more directories, ``**`` anything, ``*`` and
    ``?`` stay within one path segment. Every other character is literal.

    Raises:
        PatternRejected: the translated pattern is high risk
    """
    escaped = re.escape(glob)
    translated = (
        escaped.replace(r"\*\*/", "(?:.*/)?")
        .replace(r"\*\*", ".*")
        .replace(r"\*", "[^/]*")
        .replace(r"\?", "[^/]")
    )
    source = f"^{translated}$"

    profile = (analyzer or RegexComplexityAnalyzer()).analyze(source)
    if profile.risk is RiskLevel.HIGH:
        raise PatternRejected(f"glob:{glob}", profile.risk.value, [h.value for h in profile.hazards])
    return re.compile(source)


@dataclass(frozen=True)
class Suppression:
    rule: str
    reason: str
    file: str | None = None
    regex: re.Pattern | None = field(default=None, repr=False, compare=False)

    @classmethod
    def create(cls, rule: str, reason: str, file: str | None = None,
               analyzer: RegexComplexityAnalyzer | None = None) -> "Suppression":
        if not rule or not str(rule).strip():
            raise ConfigurationError("suppressions.rule", "Suppression is missing a rule id")
        if not reason or not str(reason).strip():
            raise ConfigurationError(
                "suppressions.reason",
                f"Suppression for rule '{rule}' must document a reason",
            )
        file = normalize_pattern(file) if file else None
        regex = glob_to_regex(file, analyzer) if file else None
        return cls(rule=str(rule).strip(), reason=str(reason).strip(), file=file, regex=regex)

    @property
    def specificity(self) -> tuple[int, int, int]:
        """Sort key; larger is more specific."""
        if self.file is None:
            return (int(self.rule != ANY_RULE), 0, 0)
        literal = len(_GLOB_CHARS.sub("", self.file))
        exact = int(not _GLOB_CHARS.search(self.file))
        return (int(self.rule != ANY_RULE), 1 + exact, literal)

    def matches(self, rule_id: str, relative_path: str) -> bool:
        if self.rule != ANY_RULE and self.rule != rule_id:
            return False
        if self.regex is None:
            return True
        return bool(self.regex.match(relative_path))


def normalize_pattern(pattern: str) -> str:
    pattern = pattern.replace("\\", "/").strip()
    while pattern.startswith("./"):
        pattern = pattern[2:]
    return pattern


class SuppressionEngine:
    """Filters findings against a set of suppressions."""

    def __init__(self, suppressions: Iterable[Suppression] = (), project_root: Path | str | None = None):
        self.suppressions = sorted(suppressions, key=lambda s: s.specificity, reverse=True)
        self.project_root = Path(project_root).resolve() if project_root else None

    def __len__(self) -> int:
        return len(self.suppressions)

    def normalize_path(self, path: Path | str) -> str:
        """Express ``path`` as a POSIX path relative to the project root.

        Paths outside the root are returned unchanged in POSIX form.
        """
        candidate = Path(path)
        if self.project_root is not None and candidate.is_absolute():
            try:
                candidate = candidate.resolve().relative_to(self.project_root)
            except ValueError:
                pass
        return normalize_pattern(PurePosixPath(*candidate.parts).as_posix() if candidate.parts else "")

    def match(self, rule_id: str, path: Path | str) -> Suppression | None:
        """Return the most specific suppression covering the finding, if any."""
        relative = self.normalize_path(path)
        for suppression in self.suppressions:
            if suppression.matches(rule_id, relative):
                return suppression
        return None

    def apply(self, findings: Sequence[Finding]) -> tuple[list[Finding], list[SuppressedFinding]]:
        """Split findings into kept and suppressed."""
        kept: list[Finding] = []
        suppressed: list[SuppressedFinding] = []
        for finding in findings:
            suppression = self.match(finding.rule_id, finding.file)
            if suppression is None:
                kept.append(finding)
            else:
                suppressed.append(SuppressedFinding(
                    finding=finding,
                    rule=suppression.rule,
                    file_pattern=suppression.file or "*",
                    reason=suppression.reason,
                ))
        if suppressed:
            logger.info("Suppressed %d of %d findings", len(suppressed), len(findings))
        return kept, suppressed


def parse_suppressions(data: Any, analyzer: RegexComplexityAnalyzer | None = None) -> list[Suppression]:
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("suppressions", [])
    if not isinstance(data, list):
        raise ConfigurationError("suppressions", "Suppressions must be a list or a mapping with a 'suppressions' list")

    result = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"suppressions[{index}]", "Suppression entries must be mappings")
        result.append(Suppression.create(
            rule=entry.get("rule", ""),
            reason=entry.get("reason", ""),
            file=entry.get("file"),
            analyzer=analyzer,
        ))
    return result


def load_suppressions(path: Path | str, analyzer: RegexComplexityAnalyzer | None = None) -> list[Suppression]:
    """Load suppressions from a JSON or YAML file.

    Raises:
        ConfigurationError: the file is unreadable, malformed, or an entry
            lacks a rule or reason
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError("suppressions", f"Cannot read suppression file {path}: {e}", cause=e) from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.load(text, Loader=RestrictedLoader)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError("suppressions", f"Malformed suppression file {path}", cause=e) from e

    suppressions = parse_suppressions(data, analyzer)
    logger.info("Loaded %d suppressions from %s", len(suppressions), path)
    return suppressions


def find_project_root(start: Path | str, markers: Sequence[str] = DEFAULT_PROJECT_MARKERS) -> Path:
    """Search upward from ``start`` for a directory holding a marker file.

    Falls back to ``start`` (or its parent when it is a file).
    """
    start = Path(start).resolve()
    origin = start if start.is_dir() else start.parent
    for directory in (origin, *origin.parents):
        if any(os.path.exists(directory / marker) for marker in markers):
            return directory
    return origin
