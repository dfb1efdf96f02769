"""
Report renderers.

All reporters consume a finished ``AuditReport``; none of them rescan.
"""

import io
import json
from abc import ABC, abstractmethod

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..security.severity import Severity
from .models import AuditReport, Finding, severity_sort_key
from .rules import Rule, RuleEngine
from .sarif import (
    SarifArtifactLocation,
    SarifDriver,
    SarifLocation,
    SarifMessage,
    SarifPhysicalLocation,
    SarifRegion,
    SarifReport,
    SarifResult,
    SarifRule,
    SarifRuleConfig,
    SarifRun,
    SarifSuppression,
    SarifTool,
)

SARIF_LEVELS = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
    Severity.NONE: "none",
}

SEVERITY_STYLES = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
    Severity.NONE: "dim",
}


class Reporter(ABC):
    format_name: str = ""

    @abstractmethod
    def render(self, report: AuditReport) -> str:
        """Render the report as text."""


class ConsoleReporter(Reporter):
    format_name = "console"

    def __init__(self, width: int = 120):
        self.width = width

    def render(self, report: AuditReport) -> str:
        buffer = io.StringIO()
        self.print(report, Console(file=buffer, width=self.width, force_terminal=False, no_color=True))
        return buffer.getvalue()

    def print(self, report: AuditReport, console: Console) -> None:
        status = "[bold green]PASSED[/bold green]" if report.passed else "[bold red]FAILED[/bold red]"
        counts = report.severity_counts()
        summary = (
            f"Target: {report.target}\n"
            f"Status: {status} (fail on {report.fail_on.value})\n"
            f"Files scanned: {report.scanned_files}  Findings: {len(report.findings)}  "
            f"Suppressed: {len(report.suppressed)}\n"
            + "  ".join(f"{level}: {count}" for level, count in counts.items())
        )
        console.print(Panel(summary, title="Security Audit"))

        if report.findings:
            table = Table(title="Findings")
            table.add_column("Severity", style="bold")
            table.add_column("Rule", style="cyan")
            table.add_column("Location", style="white")
            table.add_column("Message")
            for finding in sorted(report.findings, key=severity_sort_key):
                style = SEVERITY_STYLES[finding.severity]
                table.add_row(
                    f"[{style}]{finding.severity.value.upper()}[/{style}]",
                    finding.rule_id,
                    f"{finding.file}:{finding.line}",
                    finding.message,
                )
            console.print(table)

        for error in report.errors:
            console.print(f"[yellow]Scan error:[/yellow] {error}", markup=True, highlight=False)


class JsonReporter(Reporter):
    format_name = "json"

    def render(self, report: AuditReport) -> str:
        return json.dumps(report.to_dict(), indent=2)


class SarifReporter(Reporter):
    format_name = "sarif"

    def __init__(self, engine: RuleEngine | None = None):
        self.engine = engine

    def build(self, report: AuditReport) -> SarifReport:
        results = [self._result(f) for f in sorted(report.findings, key=severity_sort_key)]
        for suppressed in report.suppressed:
            result = self._result(suppressed.finding)
            result.suppressions = [SarifSuppression(justification=suppressed.reason)]
            results.append(result)

        rule_ids = sorted({r.ruleId for r in results})
        rules = [self._rule(rule_id, report) for rule_id in rule_ids]
        run = SarifRun(tool=SarifTool(driver=SarifDriver(rules=rules)), results=results)
        return SarifReport(runs=[run])

    def render(self, report: AuditReport) -> str:
        return self.build(report).model_dump_json(by_alias=True, exclude_none=True, indent=2)

    def _result(self, finding: Finding) -> SarifResult:
        return SarifResult(
            ruleId=finding.rule_id,
            level=SARIF_LEVELS[finding.severity],
            message=SarifMessage(text=finding.message),
            locations=[
                SarifLocation(
                    physicalLocation=SarifPhysicalLocation(
                        artifactLocation=SarifArtifactLocation(uri=finding.file, uriBaseId="%SRCROOT%"),
                        region=SarifRegion(
                            startLine=max(finding.line, 1),
                            snippet=SarifMessage(text=finding.snippet) if finding.snippet else None,
                        ),
                    )
                )
            ],
        )

    def _rule(self, rule_id: str, report: AuditReport) -> SarifRule:
        rule: Rule | None = None
        if self.engine is not None:
            try:
                rule = self.engine.get(rule_id)
            except KeyError:
                rule = None

        if rule is None:
            sample = next(
                (f for f in [*report.findings, *(s.finding for s in report.suppressed)] if f.rule_id == rule_id)
            )
            return SarifRule(
                id=rule_id,
                name=rule_id,
                shortDescription=SarifMessage(text=sample.message),
                defaultConfiguration=SarifRuleConfig(level=SARIF_LEVELS[sample.severity]),
            )

        tags = [t for t in (rule.cwe, rule.owasp) if t]
        return SarifRule(
            id=rule.id,
            name=rule.name,
            shortDescription=SarifMessage(text=rule.name),
            fullDescription=SarifMessage(text=rule.description) if rule.description else None,
            help=SarifMessage(text=rule.remediation) if rule.remediation else None,
            helpUri=rule.references[0] if rule.references else None,
            defaultConfiguration=SarifRuleConfig(level=SARIF_LEVELS[rule.severity]),
            properties={"tags": tags, "security-severity": rule.severity.value},
        )


class MarkdownReporter(Reporter):
    format_name = "markdown"

    def render(self, report: AuditReport) -> str:
        lines = [
            "# Security Audit Report",
            "",
            f"- **Target:** `{report.target}`",
            f"- **Status:** {'PASSED' if report.passed else 'FAILED'} (fail on {report.fail_on.value})",
            f"- **Files scanned:** {report.scanned_files}",
            f"- **Findings:** {len(report.findings)} ({len(report.suppressed)} suppressed)",
            "",
            "| Severity | Count |",
            "|---|---|",
        ]
        lines.extend(f"| {level} | {count} |" for level, count in report.severity_counts().items())

        for severity, findings in report.by_severity().items():
            lines.extend(["", f"## {severity.value.capitalize()}", ""])
            for finding in findings:
                classification = f" ({finding.classification})" if finding.classification else ""
                lines.append(f"- **{finding.rule_id}**{classification}: {finding.message} at `{finding.file}:{finding.line}`")
                if finding.remediation:
                    lines.append(f"  - Remediation: {finding.remediation}")

        if report.suppressed:
            lines.extend(["", "## Suppressed", ""])
            for suppressed in report.suppressed:
                f = suppressed.finding
                lines.append(f"- {f.rule_id} at `{f.file}:{f.line}`: {suppressed.reason}")

        if report.errors:
            lines.extend(["", "## Scan errors", ""])
            lines.extend(f"- {error}" for error in report.errors)

        return "\n".join(lines) + "\n"


REPORTERS = {
    "console": ConsoleReporter,
    "json": JsonReporter,
    "sarif": SarifReporter,
    "markdown": MarkdownReporter,
}


def get_reporter(format_name: str, engine: RuleEngine | None = None) -> Reporter:
    if format_name not in REPORTERS:
        raise ValueError(f"Unknown report format: {format_name}")
    if format_name == "sarif":
        return SarifReporter(engine)
    return REPORTERS[format_name]()
