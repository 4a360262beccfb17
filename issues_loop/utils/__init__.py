"""Utility modules for the implementation loop."""

from issues_loop.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "file_exists",
    "read_file",
    "safe_write",
]
