"""
File system utilities for atomic writes and bounded reads.

Writes go through a temporary file in the destination directory followed
by an atomic rename, so concurrent readers never observe partial files.
"""

import os
import tempfile
from pathlib import Path
from typing import Union


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, creating it if necessary."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(file_path: Union[str, Path], content: str, encoding: str = "utf-8") -> None:
    """Atomically write text content to file."""
    file_path = Path(file_path)
    ensure_directory(file_path.parent)

    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding=encoding,
            dir=file_path.parent,
            delete=False,
            suffix=".tmp",
        ) as tmp_file:
            tmp_path = Path(tmp_file.name)
            tmp_file.write(content)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())

        tmp_path.replace(file_path)
    except BaseException:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)
        raise


def read_text_limited(file_path: Union[str, Path], max_bytes: int) -> str:
    """Read a UTF-8 text file, refusing files larger than ``max_bytes``."""
    file_path = Path(file_path)
    size = file_path.stat().st_size
    if size > max_bytes:
        raise ValueError(f"{file_path.name} is {size} bytes, limit is {max_bytes}")
    return file_path.read_text(encoding="utf-8", errors="replace")
