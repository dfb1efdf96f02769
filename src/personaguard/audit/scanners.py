"""
File scanners for the security auditor.

Each scanner claims files by name and turns their contents into raw
findings. Code and configuration scanners delegate to the rule engine;
the dependency scanner reads manifests and checks version pinning.
"""

import json
import re
import tomllib
from abc import ABC, abstractmethod
from pathlib import PurePosixPath
from typing import Any, Iterable

from ..util.log import get_logger
from .models import Finding
from .rules import CODE, CODE_EXTENSIONS, CONFIG_EXTENSIONS, CONFIGURATION, DEPENDENCY, RuleEngine

logger = get_logger(__name__)

LOCK_FILES = frozenset({
    "package-lock.json",
    "npm-shrinkwrap.json",
    "yarn.lock",
    "pnpm-lock.yaml",
    "poetry.lock",
    "uv.lock",
    "Pipfile.lock",
})

DEPENDENCY_MANIFESTS = frozenset({"pyproject.toml", "package.json"})

_REQUIREMENTS_NAME = re.compile(r"^requirements[\w.-]{0,40}\.txt$", re.IGNORECASE)
_REQUIREMENT = re.compile(r"^\s{0,8}([A-Za-z0-9][A-Za-z0-9._-]{0,100})(\[[^\]]{0,200}\])?\s?(.{0,500})$")
_VCS_OR_URL = re.compile(r"^(?:git\+|hg\+|svn\+|bzr\+|https?://|file:|github:|gitlab:|bitbucket:)|\s@\s", re.IGNORECASE)
_NPM_VCS = re.compile(r"^(?:git\+|git://|https?://|github:|gitlab:|bitbucket:|[\w.-]{1,100}/[\w.-]{1,100}(?:#.{0,100})?$)")


class Scanner(ABC):
    """Base class for auditor scanners."""

    name: str = ""

    def __init__(self, engine: RuleEngine):
        self.engine = engine

    @abstractmethod
    def matches(self, relative_path: str) -> bool:
        """Return True when this scanner handles the file."""

    @abstractmethod
    def scan_file(self, relative_path: str, content: str) -> list[Finding]:
        """Return raw findings for one file."""

    def rule_ids(self) -> list[str]:
        return [rule.id for rule in self.engine.rules_for(self.name)]


class CodeScanner(Scanner):
    name = CODE

    def matches(self, relative_path: str) -> bool:
        return PurePosixPath(relative_path).suffix.lower() in CODE_EXTENSIONS

    def scan_file(self, relative_path: str, content: str) -> list[Finding]:
        return self.engine.evaluate(CODE, relative_path, content)


class ConfigurationScanner(Scanner):
    name = CONFIGURATION

    def matches(self, relative_path: str) -> bool:
        path = PurePosixPath(relative_path)
        if path.name in LOCK_FILES or path.name in DEPENDENCY_MANIFESTS:
            return False
        return path.suffix.lower() in CONFIG_EXTENSIONS or path.name.startswith(".env")

    def scan_file(self, relative_path: str, content: str) -> list[Finding]:
        return self.engine.evaluate(CONFIGURATION, relative_path, content)


class DependencyScanner(Scanner):
    """Checks dependency manifests for unpinned and non-index sources.

    Handles requirements*.txt, pyproject.toml ([project] dependencies and
    optional dependencies) and package.json.
    """

    name = DEPENDENCY

    def matches(self, relative_path: str) -> bool:
        name = PurePosixPath(relative_path).name
        return name in DEPENDENCY_MANIFESTS or bool(_REQUIREMENTS_NAME.match(name))

    def scan_file(self, relative_path: str, content: str) -> list[Finding]:
        name = PurePosixPath(relative_path).name
        if name == "package.json":
            return self._scan_package_json(relative_path, content)
        if name == "pyproject.toml":
            return self._scan_pyproject(relative_path, content)
        return self._scan_requirements(relative_path, content)

    def _scan_requirements(self, relative_path: str, content: str) -> list[Finding]:
        findings = []
        for lineno, raw in enumerate(content.splitlines(), start=1):
            line = raw.split(" #", 1)[0].strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith(("-e ", "--editable ")):
                line = line.split(None, 1)[1]
            elif line.startswith("-"):
                continue
            finding = self._check_python_requirement(relative_path, lineno, line)
            if finding:
                findings.append(finding)
        return findings

    def _scan_pyproject(self, relative_path: str, content: str) -> list[Finding]:
        data = tomllib.loads(content)
        project = data.get("project", {})
        requirements = list(project.get("dependencies", []))
        for extra in project.get("optional-dependencies", {}).values():
            requirements.extend(extra)

        lines = content.splitlines()
        findings = []
        for requirement in requirements:
            lineno = _line_of(lines, requirement)
            finding = self._check_python_requirement(relative_path, lineno, requirement)
            if finding:
                findings.append(finding)
        return findings

    def _check_python_requirement(self, relative_path: str, lineno: int, requirement: str) -> Finding | None:
        requirement = requirement.strip()
        if _VCS_OR_URL.search(requirement):
            return self.engine.finding("DEP-002", relative_path, lineno, requirement,
                                       message=f"Dependency installed from VCS or URL: {requirement}",
                                       scanner=self.name)

        match = _REQUIREMENT.match(requirement)
        if not match:
            return None
        package, constraint = match.group(1), match.group(3).split(";", 1)[0].strip()

        if not constraint:
            return self.engine.finding("DEP-001", relative_path, lineno, requirement,
                                       message=f"Unpinned dependency: {package}", scanner=self.name)
        if "*" in constraint or _open_ended(constraint):
            return self.engine.finding("DEP-003", relative_path, lineno, requirement,
                                       message=f"Open-ended version range for {package}: {constraint}",
                                       scanner=self.name)
        return None

    def _scan_package_json(self, relative_path: str, content: str) -> list[Finding]:
        data = json.loads(content)
        lines = content.splitlines()
        findings = []
        for section in ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies"):
            deps = data.get(section) or {}
            if not isinstance(deps, dict):
                continue
            for package, version in deps.items():
                finding = self._check_npm_dependency(relative_path, lines, package, version)
                if finding:
                    findings.append(finding)
        return findings

    def _check_npm_dependency(self, relative_path: str, lines: list[str], package: str, version: Any) -> Finding | None:
        version = str(version).strip()
        lineno = _line_of(lines, f'"{package}"')
        snippet = f'"{package}": "{version}"'

        if version.startswith(("file:", "link:", "workspace:")):
            return None
        if _NPM_VCS.match(version):
            return self.engine.finding("DEP-002", relative_path, lineno, snippet,
                                       message=f"Dependency installed from VCS or URL: {package}",
                                       scanner=self.name)
        if version in ("", "*", "latest", "x", "X"):
            return self.engine.finding("DEP-001", relative_path, lineno, snippet,
                                       message=f"Unpinned dependency: {package}", scanner=self.name)
        if re.search(r"(?:^|\.)[xX*](?:\.|$)", version) or _open_ended(version):
            return self.engine.finding("DEP-003", relative_path, lineno, snippet,
                                       message=f"Open-ended version range for {package}: {version}",
                                       scanner=self.name)
        return None


def _open_ended(constraint: str) -> bool:
    """True when a version constraint has a lower bound but no upper bound."""
    clauses = [c.strip() for c in re.split(r"[,\s]+", constraint) if c.strip()]
    has_lower = any(c.startswith((">=", ">")) for c in clauses)
    has_upper = any(c.startswith(("<", "<=", "==", "~=", "~", "^")) for c in clauses)
    return has_lower and not has_upper


def _line_of(lines: Iterable[str], needle: str) -> int:
    for lineno, line in enumerate(lines, start=1):
        if needle in line:
            return lineno
    return 1


def default_scanners(engine: RuleEngine) -> list[Scanner]:
    return [CodeScanner(engine), DependencyScanner(engine), ConfigurationScanner(engine)]
