"""Tests for the SecurityAuditor run."""

import logging

import pytest

from personaguard.audit.auditor import SecurityAuditor
from personaguard.audit.models import AuditPhase
from personaguard.audit.suppression import Suppression, SuppressionEngine
from personaguard.config import AuditConfig
from personaguard.security.events import SecurityEventType
from personaguard.security.severity import Severity
from personaguard.util.errors import AuditCritical, ErrorCategory, PersonaGuardError


def write(root, relative, content):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    write(root, "pyproject.toml", '[project]\nname = "demo"\ndependencies = ["httpx==0.27.0"]\n')
    write(root, "src/run.py", "import os\n\ndef run(cmd):\n    os.system(cmd)\n")
    write(root, "src/hash.py", "import hashlib\n\ndigest = hashlib.md5(b'x').hexdigest()\n")
    write(root, "src/clean.py", "def add(a, b):\n    return a + b\n")
    write(root, "config/app.yaml", "debug: true\n")
    write(root, "node_modules/evil/index.js", "eval(payload)\n")
    write(root, "README.md", "os.system(cmd) in docs is not scanned\n")
    return root


def rule_files(report):
    return sorted((f.rule_id, f.file) for f in report.findings)


class TestAudit:
    """End-to-end audit runs over a temporary tree."""

    def test_findings(self, project, security_log):
        """Each vulnerable file is reported relative to the project root."""
        report = SecurityAuditor(security_log=security_log).audit(project)

        assert rule_files(report) == [
            ("CFG-001", "config/app.yaml"),
            ("CWE-327-001", "src/hash.py"),
            ("CWE-78-001", "src/run.py"),
        ]
        assert report.project_root == str(project.resolve())
        assert report.scanned_files == 5
        assert report.findings[0].rule_id == "CWE-78-001"
        assert not report.passed
        assert report.exit_code == 1

    def test_excluded_directories_skipped(self, project, security_log):
        """Vendored directories are never scanned."""
        report = SecurityAuditor(security_log=security_log).audit(project)
        assert not any(f.file.startswith("node_modules/") for f in report.findings)

    def test_single_file_target(self, project, security_log):
        report = SecurityAuditor(security_log=security_log).audit(project / "src" / "run.py")

        assert rule_files(report) == [("CWE-78-001", "src/run.py")]
        assert report.scanned_files == 1

    def test_oversized_file_skipped(self, project, security_log):
        """Files above the size limit are skipped, not reported."""
        write(project, "src/big.py", "os.system(cmd)\n" + "# padding\n" * 200)
        auditor = SecurityAuditor(AuditConfig(max_file_bytes=1000), security_log=security_log)

        report = auditor.audit(project)

        assert "src/big.py" not in {f.file for f in report.findings}
        assert report.scanned_files == 5

    def test_per_file_logs_carry_source(self, project, security_log, caplog):
        """Scan log records name the file they concern."""
        write(project, "src/big.py", "os.system(cmd)\n" + "# padding\n" * 200)
        auditor = SecurityAuditor(AuditConfig(max_file_bytes=1000), security_log=security_log)

        with caplog.at_level(logging.DEBUG, logger="personaguard.audit.auditor"):
            auditor.audit(project)

        skipped = [r for r in caplog.records if r.getMessage().startswith("Skipping oversized")]
        assert [r.source for r in skipped] == ["src/big.py"]
        scanned = {r.source for r in caplog.records if r.getMessage().startswith("Scanned ")}
        assert "src/run.py" in scanned
        summary = [r for r in caplog.records if r.getMessage().startswith("Audit of ")]
        assert not hasattr(summary[-1], "source")

    def test_malformed_manifest_recorded(self, project, security_log):
        """Per-file failures are collected without aborting the run."""
        write(project, "web/package.json", "{not json")

        report = SecurityAuditor(security_log=security_log).audit(project)

        assert len(report.errors) == 1
        assert report.errors[0].startswith("web/package.json: JSONDecodeError")
        assert ("CWE-78-001", "src/run.py") in rule_files(report)

    def test_duplicate_findings_merged(self, project, security_log):
        """Overlapping scanners do not double-report a line."""
        auditor = SecurityAuditor(security_log=security_log)
        auditor.scanners = auditor.scanners + auditor.scanners[:1]

        report = auditor.audit(project)

        keys = [f.key for f in report.findings]
        assert len(keys) == len(set(keys))

    def test_suppression_applied(self, project, security_log):
        """Suppressed findings move out of the failing set."""
        suppressions = SuppressionEngine([Suppression.create("CWE-78-001", "Trusted build runner", "src/run.py")])
        report = SecurityAuditor(suppressions=suppressions, security_log=security_log).audit(project)

        assert ("CWE-78-001", "src/run.py") not in rule_files(report)
        assert report.suppressed[0].reason == "Trusted build runner"
        assert report.passed

    def test_fail_on_high(self, project, security_log):
        """A high threshold fails on high findings alone."""
        write(project, "src/run.py", "import pickle\nobj = pickle.load(f)\n")

        assert SecurityAuditor(security_log=security_log).audit(project).passed
        assert not SecurityAuditor(security_log=security_log, fail_on="high").audit(project).passed

    def test_invalid_fail_on(self):
        with pytest.raises(PersonaGuardError) as exc_info:
            SecurityAuditor(fail_on=Severity.MEDIUM)
        assert exc_info.value.category is ErrorCategory.CONFIGURATION

    def test_raise_for_status(self, project, security_log):
        auditor = SecurityAuditor(security_log=security_log)
        report = auditor.audit(project)

        with pytest.raises(AuditCritical) as exc_info:
            auditor.raise_for_status(report)
        assert exc_info.value.finding_count == 1

    def test_missing_target(self, tmp_path, security_log):
        auditor = SecurityAuditor(security_log=security_log)
        with pytest.raises(PersonaGuardError):
            auditor.audit(tmp_path / "absent")
        assert auditor.phase is AuditPhase.IDLE

    def test_events_recorded(self, project, security_log):
        """Start, each finding and completion are logged."""
        report = SecurityAuditor(security_log=security_log).audit(project)

        assert len(security_log.events_by_type(SecurityEventType.AUDIT_STARTED)) == 1
        assert len(security_log.events_by_type(SecurityEventType.AUDIT_FINDING)) == len(report.findings)
        [completed] = security_log.events_by_type(SecurityEventType.AUDIT_COMPLETED)
        assert completed.details["passed"] is False


class TestPhases:
    """State machine transitions."""

    def test_returns_to_idle(self, project, security_log):
        auditor = SecurityAuditor(security_log=security_log)
        assert auditor.phase is AuditPhase.IDLE
        auditor.audit(project)
        assert auditor.phase is AuditPhase.IDLE

    def test_invalid_transition(self, security_log):
        auditor = SecurityAuditor(security_log=security_log)
        with pytest.raises(PersonaGuardError) as exc_info:
            auditor._transition(AuditPhase.REPORTING)
        assert exc_info.value.category is ErrorCategory.LOGIC

    def test_error_resets_phase(self, project, security_log):
        """A failure while filtering leaves the auditor idle."""
        auditor = SecurityAuditor(security_log=security_log)

        def explode(findings):
            raise RuntimeError("boom")

        auditor.suppressions.apply = explode
        with pytest.raises(RuntimeError):
            auditor.audit(project)
        assert auditor.phase is AuditPhase.IDLE
