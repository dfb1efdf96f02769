"""Audit data models."""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from ..security.severity import Severity


class AuditPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FILTERING = "filtering"
    REPORTING = "reporting"


@dataclass(frozen=True)
class Finding:
    """A single static-audit result.

    ``file`` is a POSIX path relative to the project root.
    """

    rule_id: str
    file: str
    line: int
    severity: Severity
    message: str
    snippet: str = ""
    cwe: str | None = None
    owasp: str | None = None
    remediation: str = ""
    confidence: str = "medium"
    scanner: str = ""

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.rule_id, self.file, self.line)

    @property
    def classification(self) -> str:
        return ", ".join(c for c in (self.cwe, self.owasp) if c)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


@dataclass(frozen=True)
class SuppressedFinding:
    finding: Finding
    rule: str
    file_pattern: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "finding": self.finding.to_dict(),
            "suppression": {"rule": self.rule, "file": self.file_pattern, "reason": self.reason},
        }


def severity_sort_key(finding: Finding) -> tuple:
    return (-finding.severity.rank, finding.file, finding.line, finding.rule_id)


@dataclass
class AuditReport:
    """Outcome of one auditor run."""

    target: str
    project_root: str
    findings: list[Finding] = field(default_factory=list)
    suppressed: list[SuppressedFinding] = field(default_factory=list)
    scanned_files: int = 0
    errors: list[str] = field(default_factory=list)
    rules_evaluated: list[str] = field(default_factory=list)
    fail_on: Severity = Severity.CRITICAL
    started_at: float = field(default_factory=time.time)
    duration_ms: float = 0.0

    @property
    def failing_findings(self) -> list[Finding]:
        return [f for f in self.findings if f.severity >= self.fail_on]

    @property
    def passed(self) -> bool:
        return not self.failing_findings

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def severity_counts(self) -> dict[str, int]:
        counts = {level.value: 0 for level in Severity if level is not Severity.NONE}
        for finding in self.findings:
            counts[finding.severity.value] = counts.get(finding.severity.value, 0) + 1
        return counts

    def by_severity(self) -> dict[Severity, list[Finding]]:
        grouped: dict[Severity, list[Finding]] = {}
        for finding in sorted(self.findings, key=severity_sort_key):
            grouped.setdefault(finding.severity, []).append(finding)
        return grouped

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "project_root": self.project_root,
            "passed": self.passed,
            "fail_on": self.fail_on.value,
            "summary": {
                "scanned_files": self.scanned_files,
                "total_findings": len(self.findings),
                "suppressed": len(self.suppressed),
                "by_severity": self.severity_counts(),
            },
            "findings": [f.to_dict() for f in sorted(self.findings, key=severity_sort_key)],
            "suppressed": [s.to_dict() for s in self.suppressed],
            "errors": list(self.errors),
            "started_at": self.started_at,
            "duration_ms": round(self.duration_ms, 2),
        }
