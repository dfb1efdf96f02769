"""
Unicode normalization for untrusted text.

Strips bidirectional controls, direction marks, zero-width characters and
stray control codes, applies NFC, and flags tokens mixing Latin with
Cyrillic or Greek letters as homograph risks. Confusable folding is
limited to those tokens and to letters that are visually identical to an
ASCII letter, so legitimate multilingual text passes unchanged.
"""

import bisect
import re
import unicodedata
from dataclasses import dataclass
from enum import Enum

from ..util.log import get_logger
from .severity import Severity, max_severity

logger = get_logger(__name__)


class IssueKind(str, Enum):
    DIRECTION_OVERRIDE = "direction_override"
    DIRECTION_MARK = "direction_mark"
    ZERO_WIDTH = "zero_width"
    NON_PRINTABLE = "non_printable"
    MIXED_SCRIPT = "mixed_script"
    CONFUSABLE_FOLDED = "confusable_folded"
    EXCESSIVE_ESCAPES = "excessive_escapes"
    NORMALIZATION_FAILED = "normalization_failed"


ISSUE_SEVERITY = {
    IssueKind.DIRECTION_OVERRIDE: Severity.HIGH,
    IssueKind.DIRECTION_MARK: Severity.LOW,
    IssueKind.ZERO_WIDTH: Severity.LOW,
    IssueKind.NON_PRINTABLE: Severity.LOW,
    IssueKind.MIXED_SCRIPT: Severity.MEDIUM,
    IssueKind.CONFUSABLE_FOLDED: Severity.MEDIUM,
    IssueKind.EXCESSIVE_ESCAPES: Severity.MEDIUM,
    IssueKind.NORMALIZATION_FAILED: Severity.HIGH,
}

DIRECTION_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)
DIRECTION_MARKS = frozenset(["\u200e", "\u200f"])
ZERO_WIDTH = frozenset(["\u200b", "\ufeff"])
ALLOWED_CONTROLS = frozenset(["\t", "\n", "\r"])

MAX_LITERAL_ESCAPES = 10
_LITERAL_ESCAPE = re.compile(r"\\u[0-9a-fA-F]{4}")

# Letters rendered identically to an ASCII letter in common fonts
CONFUSABLES = {
    # Cyrillic lowercase
    "\u0430": "a", "\u0435": "e", "\u043e": "o", "\u0440": "p", "\u0441": "c",
    "\u0443": "y", "\u0445": "x", "\u0455": "s", "\u0456": "i", "\u0458": "j",
    "\u0501": "d", "\u04bb": "h",
    # Cyrillic uppercase
    "\u0410": "A", "\u0412": "B", "\u0415": "E", "\u041a": "K", "\u041c": "M",
    "\u041d": "H", "\u041e": "O", "\u0420": "P", "\u0421": "C", "\u0422": "T",
    "\u0425": "X", "\u0405": "S", "\u0406": "I", "\u0408": "J",
    # Greek
    "\u0391": "A", "\u0392": "B", "\u0395": "E", "\u0396": "Z", "\u0397": "H",
    "\u0399": "I", "\u039a": "K", "\u039c": "M", "\u039d": "N", "\u039f": "O",
    "\u03a1": "P", "\u03a4": "T", "\u03a5": "Y", "\u03a7": "X", "\u03bf": "o",
}

# (start, end, script), sorted by start
_SCRIPT_RANGES = [
    (0x0041, 0x005A, "latin"),
    (0x0061, 0x007A, "latin"),
    (0x00C0, 0x024F, "latin"),
    (0x0370, 0x03FF, "greek"),
    (0x0400, 0x052F, "cyrillic"),
    (0x0530, 0x058F, "armenian"),
    (0x0590, 0x05FF, "hebrew"),
    (0x0600, 0x06FF, "arabic"),
    (0x0900, 0x097F, "devanagari"),
    (0x0E00, 0x0E7F, "thai"),
    (0x1E00, 0x1EFF, "latin"),
    (0x1F00, 0x1FFF, "greek"),
    (0x2DE0, 0x2DFF, "cyrillic"),
    (0x3040, 0x309F, "hiragana"),
    (0x30A0, 0x30FF, "katakana"),
    (0x3400, 0x4DBF, "han"),
    (0x4E00, 0x9FFF, "han"),
    (0xA640, 0xA69F, "cyrillic"),
    (0xAC00, 0xD7AF, "hangul"),
    (0xFF21, 0xFF3A, "latin"),
    (0xFF41, 0xFF5A, "latin"),
]
_RANGE_STARTS = [r[0] for r in _SCRIPT_RANGES]

_HOMOGRAPH_PAIRS = (
    frozenset({"latin", "cyrillic"}),
    frozenset({"latin", "greek"}),
    frozenset({"cyrillic", "greek"}),
)

_TOKEN_SPLIT = re.compile(r"(\s+)")


def script_of(ch: str) -> str | None:
    """Return the script name of a letter, or None for non-letters."""
    if not ch.isalpha():
        return None
    cp = ord(ch)
    idx = bisect.bisect_right(_RANGE_STARTS, cp) - 1
    if idx >= 0:
        start, end, script = _SCRIPT_RANGES[idx]
        if start <= cp <= end:
            return script
    return "other"


def is_homograph_token(token: str) -> bool:
    """True when a token mixes scripts that share look-alike letters."""
    scripts = {s for s in map(script_of, token) if s is not None}
    if len(scripts) < 2:
        return False
    return any(pair <= scripts for pair in _HOMOGRAPH_PAIRS)


@dataclass(frozen=True)
class NormalizationResult:
    normalized: str
    issues: tuple[IssueKind, ...] = ()

    @property
    def severity(self) -> Severity:
        return max_severity(*(ISSUE_SEVERITY[i] for i in self.issues))

    @property
    def changed(self) -> bool:
        return bool(self.issues)


class UnicodeNormalizer:
    """Detects and repairs Unicode abuse in untrusted strings."""

    def normalize(self, text: str) -> NormalizationResult:
        """Return best-effort normalized text and the issues found.

        Never raises.
        """
        try:
            return self._normalize(text)
        except Exception:
            logger.exception("Unicode normalization failed, returning input unchanged")
            return NormalizationResult(text, (IssueKind.NORMALIZATION_FAILED,))

    def _normalize(self, text: str) -> NormalizationResult:
        issues: list[IssueKind] = []

        def note(kind: IssueKind) -> None:
            if kind not in issues:
                issues.append(kind)

        kept = []
        for ch in text:
            if ch in DIRECTION_OVERRIDES:
                note(IssueKind.DIRECTION_OVERRIDE)
            elif ch in DIRECTION_MARKS:
                note(IssueKind.DIRECTION_MARK)
            elif ch in ZERO_WIDTH:
                note(IssueKind.ZERO_WIDTH)
            elif unicodedata.category(ch) == "Cc" and ch not in ALLOWED_CONTROLS:
                note(IssueKind.NON_PRINTABLE)
            else:
                kept.append(ch)

        normalized = unicodedata.normalize("NFC", "".join(kept))

        if len(_LITERAL_ESCAPE.findall(normalized)) > MAX_LITERAL_ESCAPES:
            note(IssueKind.EXCESSIVE_ESCAPES)

        parts = _TOKEN_SPLIT.split(normalized)
        for i, part in enumerate(parts):
            if part and not part.isspace() and is_homograph_token(part):
                note(IssueKind.MIXED_SCRIPT)
                folded = "".join(CONFUSABLES.get(ch, ch) for ch in part)
                if folded != part:
                    note(IssueKind.CONFUSABLE_FOLDED)
                    parts[i] = folded
        normalized = "".join(parts)

        return NormalizationResult(normalized, tuple(issues))
