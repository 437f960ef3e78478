"""Utility functions for nekobot."""

from nekobot.utils.helpers import (
    append_line,
    atomic_write_text,
    ensure_dir,
    file_lock,
    safe_filename,
    truncate_string,
)

__all__ = [
    "append_line",
    "atomic_write_text",
    "ensure_dir",
    "file_lock",
    "safe_filename",
    "truncate_string",
]
