"""
External command policy and execution.

Commands run through ``asyncio.create_subprocess_exec`` with an argument
vector and a minimal environment, never through a shell. The allow-list
and argument shape check back that up.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from ..util.errors import CommandRejected
from ..util.log import get_logger
from .events import SecurityEventType, SecurityLog
from .severity import Severity

logger = get_logger(__name__)

DEFAULT_ALLOWED_EXECUTABLES = frozenset({"git", "npm", "node", "npx"})
TRUSTED_BIN_DIRS = (Path("/usr/bin"), Path("/bin"), Path("/usr/local/bin"))
SAFE_ARGUMENT = re.compile(r"^[A-Za-z0-9_./-]+$")

MAX_ARGS = 64
MAX_ARG_LENGTH = 1024


@dataclass(frozen=True)
class CommandResult:
    executable: str
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_ms: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandGuard:
    """Allow-lists executables and validates argument shape."""

    def __init__(
        self,
        security_log: SecurityLog,
        allowed_executables: Iterable[str] = DEFAULT_ALLOWED_EXECUTABLES,
    ):
        self.security_log = security_log
        self.allowed_executables = frozenset(allowed_executables)

    def check(self, executable: str, args: Sequence[str]) -> str | None:
        """Return the reason a command is refused, or None if it is safe."""
        if not self._executable_allowed(executable):
            return "executable not in allow-list"
        if len(args) > MAX_ARGS:
            return f"more than {MAX_ARGS} arguments"
        for index, arg in enumerate(args):
            if not isinstance(arg, str):
                return f"argument {index} is not a string"
            if len(arg) > MAX_ARG_LENGTH:
                return f"argument {index} exceeds {MAX_ARG_LENGTH} characters"
            if not SAFE_ARGUMENT.match(arg):
                return f"argument {index} contains disallowed characters"
        return None

    def is_safe(self, executable: str, args: Sequence[str]) -> bool:
        return self._refusal(executable, args) is None

    def require_safe(self, executable: str, args: Sequence[str]) -> None:
        """Raise ``CommandRejected`` unless the command passes policy."""
        reason = self._refusal(executable, args)
        if reason is not None:
            raise CommandRejected(Path(executable).name, reason)

    def _refusal(self, executable: str, args: Sequence[str]) -> str | None:
        reason = self.check(executable, args)
        if reason is not None:
            self.security_log.record(
                SecurityEventType.COMMAND_REJECTED,
                Severity.HIGH,
                "command_guard",
                {"executable": Path(executable).name, "reason": reason, "arg_count": len(args)},
            )
            logger.warning("Command rejected: %s (%s)", Path(executable).name, reason)
        return reason

    async def run(
        self,
        executable: str,
        args: Sequence[str],
        cwd: Path | None = None,
        timeout: float = 30.0,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run an allowed command without a shell.

        Raises:
            CommandRejected: command fails policy, is missing, or times out
        """
        self.require_safe(executable, args)
        started = time.perf_counter()

        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=minimal_environment(env),
            )
        except FileNotFoundError as e:
            raise CommandRejected(executable, "executable not found", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise CommandRejected(executable, f"timed out after {timeout}s", cause=e) from e

        duration_ms = (time.perf_counter() - started) * 1000
        self.security_log.record(
            SecurityEventType.COMMAND_EXECUTED,
            Severity.NONE,
            "command_guard",
            {"executable": Path(executable).name, "returncode": process.returncode},
        )
        return CommandResult(
            executable=executable,
            args=tuple(args),
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
        )

    def _executable_allowed(self, executable: str) -> bool:
        if not executable or "\x00" in executable:
            return False
        path = Path(executable)
        if path.name not in self.allowed_executables:
            return False
        if len(path.parts) == 1:
            return True
        return path.is_absolute() and path.parent in TRUSTED_BIN_DIRS


def minimal_environment(user_env: dict[str, str] | None = None) -> dict[str, str]:
    """Build a minimal child environment.

    Only a short list of tool settings pass through from ``user_env``.
    """
    isolated_env = {
        "PATH": "/usr/local/bin:/usr/bin:/bin",
        "HOME": "/tmp",
        "LC_ALL": "C",
        "LANG": "C",
        "TERM": "dumb",
    }
    if user_env:
        safe_vars = {"NODE_ENV", "NPM_CONFIG_CACHE", "npm_config_cache", "GIT_TERMINAL_PROMPT"}
        for key, value in user_env.items():
            if key in safe_vars:
                isolated_env[key] = value
    return isolated_env
