"""Tests for the external command policy."""

import shutil

import pytest

from personaguard.security.commands import CommandGuard, minimal_environment
from personaguard.security.events import SecurityEventType
from personaguard.util.errors import CommandRejected


@pytest.fixture
def guard(security_log):
    return CommandGuard(security_log)


class TestCommandPolicy:
    """Allow-list and argument shape."""

    def test_allowed_command(self, guard):
        """Allow-listed executables with plain arguments pass."""
        assert guard.is_safe("git", ["status", "--short"])
        assert guard.is_safe("npm", ["install", "left-pad"])

    def test_executable_not_allowed(self, guard):
        """Executables outside the allow-list are refused."""
        assert guard.check("rm", ["-rf", "/"]) == "executable not in allow-list"
        assert not guard.is_safe("bash", ["-c", "ls"])

    def test_trusted_absolute_path(self, guard):
        """Absolute paths are allowed only from trusted directories."""
        assert guard.is_safe("/usr/bin/git", ["status"])
        assert not guard.is_safe("/tmp/git", ["status"])

    @pytest.mark.parametrize("arg", [
        "status; rm -rf /",
        "$(whoami)",
        "`id`",
        "a|b",
        "x\x00y",
        "name with space",
    ])
    def test_rejects_metacharacters(self, guard, arg):
        """Arguments with shell metacharacters are refused."""
        assert not guard.is_safe("git", [arg])

    def test_colon_not_in_argument_alphabet(self, guard):
        """URL-style arguments fall outside the conservative alphabet."""
        assert not guard.is_safe("git", ["clone", "https://github.com/org/repo.git"])

    def test_rejects_long_argument(self, guard):
        """Arguments over 1024 characters are refused."""
        assert not guard.is_safe("git", ["a" * 1025])

    def test_rejects_too_many_arguments(self, guard):
        """More than 64 arguments are refused."""
        assert not guard.is_safe("git", ["a"] * 65)

    def test_require_safe_raises(self, guard, security_log):
        """require_safe raises and records the refusal."""
        with pytest.raises(CommandRejected):
            guard.require_safe("curl", ["example.com"])

        event = security_log.events_by_type(SecurityEventType.COMMAND_REJECTED)[0]
        assert event.details["executable"] == "curl"
        assert event.details["reason"] == "executable not in allow-list"


class TestMinimalEnvironment:
    """Child process environment."""

    def test_drops_unknown_variables(self):
        """Only allow-listed variables pass through."""
        env = minimal_environment({"NODE_ENV": "production", "PERSONAGUARD_GITHUB_TOKEN": "secret"})
        assert env["NODE_ENV"] == "production"
        assert "PERSONAGUARD_GITHUB_TOKEN" not in env
        assert env["PATH"] == "/usr/local/bin:/usr/bin:/bin"


@pytest.mark.skipif(shutil.which("echo") is None or shutil.which("sleep") is None, reason="coreutils unavailable")
class TestCommandRun:
    """Subprocess execution without a shell."""

    async def test_run_captures_output(self, security_log):
        """Output is captured and execution recorded."""
        guard = CommandGuard(security_log, allowed_executables={"echo"})
        result = await guard.run("echo", ["hello"])

        assert result.ok
        assert result.stdout.strip() == "hello"
        assert security_log.events_by_type(SecurityEventType.COMMAND_EXECUTED)

    async def test_timeout_kills_process(self, security_log):
        """A command exceeding its timeout is killed and refused."""
        guard = CommandGuard(security_log, allowed_executables={"sleep"})
        with pytest.raises(CommandRejected) as exc_info:
            await guard.run("sleep", ["5"], timeout=0.2)
        assert "timed out" in exc_info.value.message

    async def test_run_refuses_before_spawning(self, security_log):
        """Policy failures never spawn a process."""
        guard = CommandGuard(security_log, allowed_executables={"echo"})
        with pytest.raises(CommandRejected):
            await guard.run("echo", ["$(id)"])
        assert not security_log.events_by_type(SecurityEventType.COMMAND_EXECUTED)
