"""
Static security auditor.

Runs as a small state machine: IDLE -> SCANNING -> FILTERING -> REPORTING
-> IDLE. Scanning fans files out to a thread pool; filtering and
reporting run on the calling thread.
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Iterator, Sequence

from ..config import AuditConfig
from ..security.events import SecurityEventType, SecurityLog
from ..security.severity import Severity
from ..util.errors import (
    AuditCritical,
    ErrorCategory,
    ErrorCollector,
    PersonaGuardError,
    create_error_context,
    format_exception_chain,
)
from ..util.fs import read_text_limited
from ..util.log import LogContext, get_logger
from .models import AuditPhase, AuditReport, Finding, severity_sort_key
from .rules import RuleEngine, default_rule_engine
from .scanners import Scanner, default_scanners
from .suppression import SuppressionEngine, find_project_root

logger = get_logger(__name__)

SOURCE = "security_auditor"

_TRANSITIONS = {
    AuditPhase.IDLE: {AuditPhase.SCANNING},
    AuditPhase.SCANNING: {AuditPhase.FILTERING, AuditPhase.IDLE},
    AuditPhase.FILTERING: {AuditPhase.REPORTING, AuditPhase.IDLE},
    AuditPhase.REPORTING: {AuditPhase.IDLE},
}


class SecurityAuditor:
    """Walks a source tree and reports rule findings.

    Per-file failures (unreadable files, malformed manifests) are collected
    into ``report.errors`` instead of aborting the run.
    """

    def __init__(
        self,
        config: AuditConfig | None = None,
        engine: RuleEngine | None = None,
        scanners: Sequence[Scanner] | None = None,
        suppressions: SuppressionEngine | None = None,
        security_log: SecurityLog | None = None,
        project_root: Path | str | None = None,
        fail_on: Severity | str | None = None,
    ):
        self.config = config or AuditConfig()
        self.engine = engine or default_rule_engine()
        self.scanners = list(scanners) if scanners is not None else default_scanners(self.engine)
        self.suppressions = suppressions or SuppressionEngine()
        self.security_log = security_log or SecurityLog()
        self.project_root = Path(project_root).resolve() if project_root else None
        self.fail_on = Severity.parse(fail_on or self.config.fail_on)
        if self.fail_on not in (Severity.CRITICAL, Severity.HIGH):
            raise PersonaGuardError(
                f"fail_on must be critical or high, got {self.fail_on.value}",
                category=ErrorCategory.CONFIGURATION,
            )

        self._phase = AuditPhase.IDLE
        self._phase_lock = threading.Lock()

    @property
    def phase(self) -> AuditPhase:
        return self._phase

    def _transition(self, target: AuditPhase) -> None:
        with self._phase_lock:
            if target not in _TRANSITIONS[self._phase]:
                raise PersonaGuardError(
                    f"Invalid auditor transition {self._phase.value} -> {target.value}",
                    category=ErrorCategory.LOGIC,
                )
            logger.debug("Auditor %s -> %s", self._phase.value, target.value)
            self._phase = target

    def audit(self, target: Path | str) -> AuditReport:
        """Scan ``target`` (a directory or single file) and build a report."""
        target = Path(target).resolve()
        if not target.exists():
            raise PersonaGuardError(
                f"Audit target does not exist: {target}",
                category=ErrorCategory.FILESYSTEM,
            )

        self._transition(AuditPhase.SCANNING)
        started = time.perf_counter()
        try:
            root = self._project_root_for(target)
            if self.suppressions.project_root is None:
                self.suppressions.project_root = root

            self.security_log.record(
                SecurityEventType.AUDIT_STARTED,
                Severity.NONE,
                SOURCE,
                {"target": str(target), "project_root": str(root)},
            )

            report = AuditReport(
                target=str(target),
                project_root=str(root),
                fail_on=self.fail_on,
                rules_evaluated=[r.id for r in self.engine.rules()],
            )
            raw = self._scan(target, root, report)

            self._transition(AuditPhase.FILTERING)
            findings, suppressed = self.suppressions.apply(_dedupe(raw))

            self._transition(AuditPhase.REPORTING)
            report.findings = sorted(findings, key=severity_sort_key)
            report.suppressed = suppressed
            report.duration_ms = (time.perf_counter() - started) * 1000
            self._record_outcome(report)
        except BaseException:
            with self._phase_lock:
                self._phase = AuditPhase.IDLE
            raise

        self._transition(AuditPhase.IDLE)
        logger.info(
            "Audit of %s: %d findings, %d suppressed, %s",
            target,
            len(report.findings),
            len(report.suppressed),
            "passed" if report.passed else "failed",
            extra={"duration_ms": report.duration_ms},
        )
        return report

    def raise_for_status(self, report: AuditReport) -> None:
        """Raise ``AuditCritical`` when the report fails its threshold."""
        failing = report.failing_findings
        if failing:
            raise AuditCritical(
                f"{len(failing)} unsuppressed finding(s) at or above {report.fail_on.value}",
                finding_count=len(failing),
            )

    def _project_root_for(self, target: Path) -> Path:
        if self.project_root is not None:
            return self.project_root
        return find_project_root(target, self.config.project_markers)

    def _scan(self, target: Path, root: Path, report: AuditReport) -> list[Finding]:
        collector = ErrorCollector()
        files = list(self._iter_files(target))
        findings: list[Finding] = []

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            futures = {
                pool.submit(self._scan_one, path, _relative(path, root, target)): path
                for path in files
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    scanned, file_findings = future.result()
                except Exception as e:
                    relative = _relative(path, root, target)
                    context = create_error_context("security_auditor", "scan_file", parameters={"file": relative})
                    collector.add_exception(e, context)
                    report.errors.append(f"{relative}: {type(e).__name__}: {e}")
                    with LogContext(logger, source=relative):
                        logger.warning("Failed to scan %s: %s", relative, e)
                        logger.debug("%s", format_exception_chain(e))
                    continue
                if scanned:
                    report.scanned_files += 1
                findings.extend(file_findings)

        if collector.has_errors() or collector.has_warnings():
            logger.info("Scan completed with errors: %s", collector.get_summary())
        return findings

    def _scan_one(self, path: Path, relative: str) -> tuple[bool, list[Finding]]:
        scanners = [s for s in self.scanners if s.matches(relative)]
        if not scanners:
            return False, []

        with LogContext(logger, source=relative):
            try:
                content = read_text_limited(path, self.config.max_file_bytes)
            except ValueError:
                logger.debug("Skipping oversized file %s", relative)
                return False, []

            findings: list[Finding] = []
            for scanner in scanners:
                findings.extend(scanner.scan_file(relative, content))
            logger.debug("Scanned %s: %d finding(s)", relative, len(findings))
        return True, findings

    def _iter_files(self, target: Path) -> Iterator[Path]:
        if target.is_file():
            yield target
            return

        excluded = set(self.config.excluded_dirs)
        for dirpath, dirnames, filenames in os.walk(target):
            dirnames[:] = sorted(d for d in dirnames if d not in excluded)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                if path.is_symlink() or not path.is_file():
                    continue
                yield path

    def _record_outcome(self, report: AuditReport) -> None:
        for finding in report.findings:
            self.security_log.record(
                SecurityEventType.AUDIT_FINDING,
                finding.severity,
                SOURCE,
                {"rule_id": finding.rule_id, "file": finding.file, "line": finding.line},
            )
        self.security_log.record(
            SecurityEventType.AUDIT_COMPLETED,
            Severity.NONE if report.passed else report.fail_on,
            SOURCE,
            {
                "passed": report.passed,
                "findings": len(report.findings),
                "suppressed": len(report.suppressed),
                "scanned_files": report.scanned_files,
                "errors": len(report.errors),
            },
        )


def _relative(path: Path, root: Path, target: Path) -> str:
    for base in (root, target if target.is_dir() else target.parent):
        try:
            return path.relative_to(base).as_posix()
        except ValueError:
            continue
    return path.as_posix()


def _dedupe(findings: list[Finding]) -> list[Finding]:
    seen: set[tuple[str, str, int]] = set()
    unique = []
    for finding in findings:
        if finding.key not in seen:
            seen.add(finding.key)
            unique.append(finding)
    return unique
