"""
Utility functions for the i18n batch pipeline.

Includes:
- Content hashing
- Atomic JSON persistence
- Cache record naming
- Human-readable formatting
"""

import hashlib
import json
import os
import re
import time
from pathlib import Path
from typing import Any

from .common_types import CacheCorruptionError


def sha256_text(text: str) -> str:
    """SHA-256 hex digest of a string (UTF-8, undecodable characters replaced)."""
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(path: str | Path) -> str:
    """Hash a file's bytes. Raises OSError if the file cannot be read."""
    with open(path, "rb") as f:
        return sha256_bytes(f.read())


_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def sanitize_path(file_path: str) -> str:
    """Turn a file path into a flat, filesystem-safe record name."""
    flat = re.sub(r"[/\\]", "_", file_path)
    return _UNSAFE_CHARS.sub("", flat)


def atomic_write_json(path: str | Path, data: Any, indent: int | None = 2) -> None:
    """Write JSON via a temp file and os.replace so readers never see a partial file."""
    path = Path(path)
    tmp_file = path.with_name(f"{path.name}.tmp")
    with open(tmp_file, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=False)
    os.replace(tmp_file, path)


def read_json_file(path: str | Path) -> Any:
    """
    Read a JSON document.

    Raises:
        FileNotFoundError: if the file does not exist
        CacheCorruptionError: if the file exists but cannot be parsed
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        raise
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CacheCorruptionError(path.name, str(e)) from e


def format_duration(seconds: float) -> str:
    """Format seconds as '45s', '3m 20s' or '2h 5m'."""
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"


def format_kb(size_bytes: int) -> str:
    return f"{size_bytes / 1024:.2f} KB"


def format_timestamp(timestamp: float | None) -> str | None:
    if not timestamp:
        return None
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(timestamp))
