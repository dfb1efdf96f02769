"""
Static backtracking-risk analysis for regular expressions.

Python's ``re`` engine backtracks, so a pattern with nested or
alternated unbounded repetition can take exponential time on crafted
input. The analyzer inspects pattern source text, classifies its risk and
assigns a content-length ceiling. ``bounded_spans`` enforces that ceiling
by never handing the matcher more than ``max_content_length`` characters
at once.
"""

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from ..util.log import get_logger

logger = get_logger(__name__)

QUANTIFIER_THRESHOLD = 5
SLOW_EVALUATION_MS = 100.0
WINDOW_OVERLAP = 256

_BRACE_QUANTIFIER = re.compile(r"\{(\d*)(,?)(\d*)\}")


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Hazard(str, Enum):
    NESTED_QUANTIFIER = "nested_quantifier"
    QUANTIFIED_ALTERNATION = "quantified_alternation"
    OVERLAPPING_ALTERNATION = "overlapping_alternation"
    QUANTIFIED_LOOKAROUND = "quantified_lookaround"
    MALFORMED = "malformed"


CONTENT_CEILINGS = {
    RiskLevel.LOW: 100_000,
    RiskLevel.MEDIUM: 10_000,
    RiskLevel.HIGH: 1_000,
}


@dataclass(frozen=True)
class ComplexityProfile:
    risk: RiskLevel
    max_content_length: int
    hazards: tuple[Hazard, ...] = ()
    quantifier_count: int = 0


@dataclass
class _Group:
    content_start: int
    lookaround: bool = False
    branch_start: int = 0
    branches: list[str] = field(default_factory=list)
    has_unbounded: bool = False
    has_alternation: bool = False

    def __post_init__(self):
        self.branch_start = self.content_start


class _Scanner:
    """Single pass over pattern source tracking group structure."""

    def __init__(self, source: str):
        self.source = source
        self.hazards: list[Hazard] = []
        self.quantifiers = 0
        self.stack = [_Group(content_start=0)]

    def flag(self, hazard: Hazard) -> None:
        if hazard not in self.hazards:
            self.hazards.append(hazard)

    def run(self) -> None:
        src = self.source
        n = len(src)
        i = 0
        while i < n:
            ch = src[i]
            if ch == "\\":
                i = self._quantifier(min(i + 2, n))
            elif ch == "[":
                i = self._quantifier(self._skip_class(i))
            elif ch == "(":
                i = self._open_group(i)
            elif ch == ")":
                i = self._close_group(i)
            elif ch == "|":
                top = self.stack[-1]
                top.has_alternation = True
                top.branches.append(src[top.branch_start:i])
                top.branch_start = i + 1
                i += 1
            else:
                i = self._quantifier(i + 1)

        if len(self.stack) != 1:
            self.flag(Hazard.MALFORMED)
        else:
            root = self.stack[0]
            root.branches.append(src[root.branch_start:])
            self._check_duplicates(root)

    def _skip_class(self, i: int) -> int:
        src = self.source
        j = i + 1
        if j < len(src) and src[j] == "^":
            j += 1
        if j < len(src) and src[j] == "]":
            j += 1
        while j < len(src) and src[j] != "]":
            j += 2 if src[j] == "\\" else 1
        if j >= len(src):
            self.flag(Hazard.MALFORMED)
        return j + 1

    def _open_group(self, i: int) -> int:
        src = self.source
        lookaround = False
        if src.startswith(("(?=", "(?!"), i):
            lookaround = True
            start = i + 3
        elif src.startswith(("(?<=", "(?<!"), i):
            lookaround = True
            start = i + 4
        elif src.startswith("(?P<", i):
            end = src.find(">", i)
            start = end + 1 if end != -1 else len(src)
        elif src.startswith("(?", i):
            j = i + 2
            while j < len(src) and src[j] not in ":)":
                j += 1
            start = j + 1 if j < len(src) and src[j] == ":" else j
        else:
            start = i + 1
        self.stack.append(_Group(content_start=start, lookaround=lookaround))
        return start

    def _close_group(self, i: int) -> int:
        if len(self.stack) == 1:
            self.flag(Hazard.MALFORMED)
            return i + 1
        group = self.stack.pop()
        group.branches.append(self.source[group.branch_start:i])
        self._check_duplicates(group)

        if group.lookaround and group.has_unbounded:
            self.flag(Hazard.QUANTIFIED_LOOKAROUND)

        end, is_quantifier, unbounded = self._read_quantifier(i + 1)
        if is_quantifier:
            self.quantifiers += 1
            if unbounded and group.has_unbounded:
                self.flag(Hazard.NESTED_QUANTIFIER)
            if unbounded and group.has_alternation:
                self.flag(Hazard.QUANTIFIED_ALTERNATION)

        parent = self.stack[-1]
        parent.has_unbounded = parent.has_unbounded or group.has_unbounded or unbounded
        return end

    def _check_duplicates(self, group: _Group) -> None:
        branches = group.branches
        if len(branches) > 1 and len(set(branches)) < len(branches):
            self.flag(Hazard.OVERLAPPING_ALTERNATION)

    def _quantifier(self, i: int) -> int:
        """Consume a quantifier following an atom ending at ``i``."""
        end, is_quantifier, unbounded = self._read_quantifier(i)
        if is_quantifier:
            self.quantifiers += 1
            if unbounded:
                self.stack[-1].has_unbounded = True
        return end

    def _read_quantifier(self, i: int) -> tuple[int, bool, bool]:
        src = self.source
        if i >= len(src):
            return i, False, False
        ch = src[i]
        if ch in "*+":
            end, unbounded = i + 1, True
        elif ch == "?":
            end, unbounded = i + 1, False
        elif ch == "{":
            m = _BRACE_QUANTIFIER.match(src, i)
            if not m or not (m.group(1) or m.group(3)):
                return i, False, False
            end = m.end()
            unbounded = bool(m.group(2)) and not m.group(3)
        else:
            return i, False, False
        # lazy or possessive modifier
        if end < len(src) and src[end] in "?+":
            end += 1
        return end, True, unbounded


@lru_cache(maxsize=1024)
def _analyze(source: str) -> ComplexityProfile:
    scanner = _Scanner(source)
    scanner.run()

    if scanner.hazards:
        risk = RiskLevel.HIGH
    elif scanner.quantifiers > QUANTIFIER_THRESHOLD:
        risk = RiskLevel.MEDIUM
    else:
        risk = RiskLevel.LOW

    return ComplexityProfile(
        risk=risk,
        max_content_length=CONTENT_CEILINGS[risk],
        hazards=tuple(scanner.hazards),
        quantifier_count=scanner.quantifiers,
    )


class RegexComplexityAnalyzer:
    """Classifies regular expressions by backtracking risk."""

    def analyze(self, source: str) -> ComplexityProfile:
        """Return the risk profile for a pattern source string."""
        return _analyze(source)

    def is_safe(self, source: str) -> bool:
        return self.analyze(source).risk is not RiskLevel.HIGH


def bounded_spans(
    compiled: re.Pattern,
    text: str,
    profile: ComplexityProfile,
    label: str = "",
) -> list[tuple[int, int]]:
    """Return non-empty match spans without exceeding the content ceiling.

    Text longer than the ceiling is scanned in overlapping windows, each
    truncated to ``profile.max_content_length`` characters before the
    matcher sees it. Spans are reported as offsets into ``text``.
    """
    limit = profile.max_content_length
    if len(text) <= limit:
        windows = [0]
    else:
        step = limit - min(WINDOW_OVERLAP, limit // 4)
        # Last window is aligned to the end of the text
        windows = list(range(0, len(text) - limit, step))
        windows.append(len(text) - limit)

    spans: list[tuple[int, int]] = []
    seen: set[tuple[int, int]] = set()
    started = time.perf_counter()

    for offset in windows:
        chunk = text[offset:offset + limit]
        for match in compiled.finditer(chunk):
            start, end = match.start(), match.end()
            if start == end:
                continue
            span = (offset + start, offset + end)
            if span not in seen:
                seen.add(span)
                spans.append(span)

    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > SLOW_EVALUATION_MS:
        logger.warning(
            "Slow pattern evaluation %s: %.1fms over %d chars",
            label or "<anonymous>",
            elapsed_ms,
            len(text),
            extra={"duration_ms": elapsed_ms},
        )

    spans.sort()
    return spans
