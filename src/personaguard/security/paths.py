"""
Filesystem path confinement.

All persona storage reads and writes go through ``PathGuard``. A
candidate path is canonicalized (symlinks followed) and must land
strictly inside the configured root. Writes use a temporary file in the
destination directory and an atomic rename.
"""

import re
import unicodedata
from pathlib import Path
from typing import Iterable, Optional, Union

from ..util.errors import PathViolation
from ..util.fs import atomic_write_text, read_text_limited
from ..util.log import get_logger
from .events import SecurityEventType, SecurityLog
from .severity import Severity

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_REPEATED_SEPARATORS = re.compile(r"[-_.]{2,}")


class PathGuard:
    """Canonicalizes and confines filesystem paths to an allow-listed root."""

    # Maximum path length
    MAX_PATH_LENGTH = 4096

    # Maximum length of a single path component
    MAX_FILENAME_LENGTH = 255

    def __init__(
        self,
        security_log: SecurityLog,
        root: Optional[Union[str, Path]] = None,
        allowed_extensions: Optional[Iterable[str]] = None,
        max_file_bytes: int = 1024 * 1024,
    ):
        """Initialize path guard.

        Args:
            security_log: Event sink for rejections
            root: Default root for ``resolve`` when none is passed
            allowed_extensions: File suffixes permitted, or None for any
            max_file_bytes: Largest file ``read_text`` will load
        """
        self.security_log = security_log
        self.root = Path(root) if root is not None else None
        self.allowed_extensions = (
            frozenset(ext.lower() for ext in allowed_extensions) if allowed_extensions else None
        )
        self.max_file_bytes = max_file_bytes

    def resolve(self, candidate: Union[str, Path], root: Optional[Union[str, Path]] = None) -> Path:
        """Resolve ``candidate`` inside ``root``.

        Returns:
            Absolute path strictly inside the resolved root

        Raises:
            PathViolation: path is malformed or escapes the root
        """
        root = root if root is not None else self.root
        if root is None:
            raise PathViolation("No root configured for path resolution")

        path_str = str(candidate) if candidate is not None else ""
        if not path_str:
            raise self._violation("Empty path provided", "empty_path", path_str)
        if "\x00" in path_str:
            raise self._violation("Path contains a null byte", "null_byte", path_str)
        if len(path_str) > self.MAX_PATH_LENGTH:
            raise self._violation(
                f"Path too long: {len(path_str)} > {self.MAX_PATH_LENGTH}", "path_too_long", path_str
            )

        try:
            resolved_root = Path(root).resolve()
            resolved = (resolved_root / Path(path_str)).resolve()
        except (OSError, ValueError, RuntimeError) as e:
            raise self._violation(f"Failed to resolve path: {e}", "path_resolution_failed", path_str) from e

        if resolved == resolved_root or resolved_root not in resolved.parents:
            raise self._violation("Path resolves outside the allowed root", "path_outside_root", path_str)

        for part in resolved.relative_to(resolved_root).parts:
            if len(part) > self.MAX_FILENAME_LENGTH:
                raise self._violation(
                    f"Path component too long: {len(part)} > {self.MAX_FILENAME_LENGTH}",
                    "filename_too_long",
                    path_str,
                )

        if self.allowed_extensions is not None and resolved.suffix.lower() not in self.allowed_extensions:
            raise self._violation(
                f"File extension '{resolved.suffix}' not allowed", "extension_not_allowed", path_str
            )

        return resolved

    def read_text(self, candidate: Union[str, Path], root: Optional[Union[str, Path]] = None) -> str:
        """Read a confined file, refusing files over ``max_file_bytes``."""
        path = self.resolve(candidate, root)
        try:
            content = read_text_limited(path, self.max_file_bytes)
        except ValueError as e:
            raise PathViolation(str(e), path=path) from e
        self.security_log.record(
            SecurityEventType.FILE_ACCESS, Severity.NONE, "path_guard", {"operation": "read", "name": path.name}
        )
        return content

    def write_text(
        self,
        candidate: Union[str, Path],
        content: str,
        root: Optional[Union[str, Path]] = None,
    ) -> Path:
        """Atomically write a confined file and return its resolved path."""
        path = self.resolve(candidate, root)
        atomic_write_text(path, content)
        self.security_log.record(
            SecurityEventType.FILE_ACCESS, Severity.NONE, "path_guard", {"operation": "write", "name": path.name}
        )
        return path

    def _violation(self, message: str, violation_type: str, path_str: str) -> PathViolation:
        self.security_log.record(
            SecurityEventType.PATH_TRAVERSAL_ATTEMPT,
            Severity.HIGH,
            "path_guard",
            {"violation_type": violation_type, "length": len(path_str)},
        )
        logger.warning("Path rejected: %s", violation_type)
        return PathViolation(message, path=path_str, details={"violation_type": violation_type})


def safe_filename(name: str, max_length: int = 100) -> str:
    """Derive a storage-safe file name from an arbitrary display name."""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", ascii_name.strip().lower())
    cleaned = _REPEATED_SEPARATORS.sub("-", cleaned).strip("-._")
    return cleaned[:max_length] or "unnamed"
