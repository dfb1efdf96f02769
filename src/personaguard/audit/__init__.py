"""
Static security audit engine.

Scanners walk a source tree and emit findings through the rule engine;
the suppression engine filters them; reporters render the result.
"""

from .auditor import SecurityAuditor
from .models import AuditPhase, AuditReport, Finding, SuppressedFinding
from .reporters import ConsoleReporter, JsonReporter, MarkdownReporter, Reporter, SarifReporter, get_reporter
from .rules import PatternRule, Rule, RuleEngine, SemanticRule, default_rule_engine
from .scanners import CodeScanner, ConfigurationScanner, DependencyScanner, Scanner
from .suppression import Suppression, SuppressionEngine, find_project_root, glob_to_regex, load_suppressions

__all__ = [
    "AuditPhase",
    "AuditReport",
    "CodeScanner",
    "ConfigurationScanner",
    "ConsoleReporter",
    "DependencyScanner",
    "Finding",
    "JsonReporter",
    "MarkdownReporter",
    "PatternRule",
    "Reporter",
    "Rule",
    "RuleEngine",
    "SarifReporter",
    "Scanner",
    "SecurityAuditor",
    "SemanticRule",
    "SuppressedFinding",
    "Suppression",
    "SuppressionEngine",
    "default_rule_engine",
    "find_project_root",
    "get_reporter",
    "glob_to_regex",
    "load_suppressions",
]
