"""
Pytest configuration and shared fixtures for PersonaGuard tests.

Every fixture builds its own SecurityLog so assertions never see events
from another test.
"""

from pathlib import Path

import pytest

from personaguard.config import PathConfig, PersonaGuardConfig, SecurityLogConfig, reset_config
from personaguard.security.content import ContentValidator
from personaguard.security.events import SecurityLog
from personaguard.security.paths import PathGuard
from personaguard.security.structured import SecureStructuredParser
from personaguard.security.unicode import UnicodeNormalizer

CLASSIC_TOKEN = "ghp_" + "A1b2C3d4E5" * 3 + "F6g7H8"
OAUTH_TOKEN = "gho_" + "Z9y8X7w6V5" * 3 + "U4t3S2"
FINE_GRAINED_TOKEN = "github_pat_" + "Ab1_" * 20 + "Cd"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Drop cached configuration and any PERSONAGUARD_ variables."""
    import os

    for name in list(os.environ):
        if name.startswith("PERSONAGUARD_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def security_log() -> SecurityLog:
    log = SecurityLog(capacity=500)
    yield log
    log.close()


@pytest.fixture
def normalizer() -> UnicodeNormalizer:
    return UnicodeNormalizer()


@pytest.fixture
def validator(security_log: SecurityLog) -> ContentValidator:
    return ContentValidator(security_log)


@pytest.fixture
def parser(validator: ContentValidator) -> SecureStructuredParser:
    return SecureStructuredParser(validator)


@pytest.fixture
def persona_root(tmp_path: Path) -> Path:
    root = tmp_path / "personas"
    root.mkdir()
    return root


@pytest.fixture
def path_guard(security_log: SecurityLog, persona_root: Path) -> PathGuard:
    return PathGuard(security_log, root=persona_root, allowed_extensions=[".md", ".yaml"])


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(persona_root: Path) -> PersonaGuardConfig:
    return PersonaGuardConfig(
        paths=PathConfig(persona_root=persona_root),
        security_log=SecurityLogConfig(capacity=500),
    )


@pytest.fixture
def classic_token() -> str:
    return CLASSIC_TOKEN


@pytest.fixture
def oauth_token() -> str:
    return OAUTH_TOKEN


@pytest.fixture
def fine_grained_token() -> str:
    return FINE_GRAINED_TOKEN
