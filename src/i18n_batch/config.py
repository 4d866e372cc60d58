"""
Configuration for the i18n batch pipeline

Environment Variables:
- I18N_CACHE_DIR: Cache root directory (default: .translation-cache)
- I18N_SRC_DIR: Source root to scan (default: src)
- I18N_FILE_PATTERNS: Comma-separated glob patterns (default: **/*.{js,ts,jsx,tsx})
- I18N_MAX_CONCURRENCY: Concurrent translator calls (default: 3)
- I18N_TASK_TIMEOUT: Per-file translator timeout in seconds (default: 300)
- I18N_ISOLATION_MODE: "in_process", "thread" or "process" (default: in_process)
- I18N_MAX_WORKERS: Concurrent isolated workers (default: auto)
- I18N_RUN_DEADLINE: Whole-run deadline in seconds for isolated workers (default: 2x task timeout)
- I18N_RESPONSE_TTL: Response cache TTL in seconds (default: 7 days)
- I18N_RESPONSE_MAX_ENTRIES: Response cache capacity (default: 1000)
- I18N_TRACK_REVISIONS: Use git revisions as a secondary staleness signal (default: true)
- I18N_PRIORITIZE_BY: count | size | modified (default: count)
- I18N_PROGRESS_INTERVAL: Seconds between progress snapshots (default: 10)
- I18N_ESTIMATE_TOKENS: Count tokens of pending literals with tiktoken (default: true)
"""

import os
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Set

from dotenv import load_dotenv

from .common_types import ConfigurationError, SortKey, get_optimal_workers

load_dotenv()


ISOLATION_MODES = ("in_process", "thread", "process")

DEFAULT_CACHE_DIR = ".translation-cache"
DEFAULT_FILE_PATTERNS = "**/*.{js,ts,jsx,tsx}"

# CJK Unified Ideographs
DEFAULT_QUALIFYING_PATTERN = r"[一-鿿]"

SECONDS_PER_DAY = 24 * 60 * 60


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: str | None, parse: Callable[[str], Any]) -> Any:
    """Parse a numeric variable, raising ConfigurationError on malformed input."""
    raw = os.getenv(name) or default
    if raw is None:
        return None
    try:
        return parse(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_patterns() -> list[str]:
    raw = os.getenv("I18N_FILE_PATTERNS", DEFAULT_FILE_PATTERNS)
    return split_patterns(raw)


def split_patterns(raw: str) -> list[str]:
    """Split a comma-separated pattern list, keeping commas inside {a,b} groups."""
    patterns: list[str] = []
    depth = 0
    current = ""
    for ch in raw:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth = max(0, depth - 1)
        if ch == "," and depth == 0:
            if current.strip():
                patterns.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        patterns.append(current.strip())
    return patterns


@dataclass
class BatchConfig:
    """Configuration for scanning, caching and scheduling."""

    # Locations
    cache_dir: str = field(
        default_factory=lambda: os.getenv("I18N_CACHE_DIR", DEFAULT_CACHE_DIR)
    )
    src_dir: str = field(default_factory=lambda: os.getenv("I18N_SRC_DIR", "src"))
    file_patterns: list[str] = field(default_factory=_env_patterns)

    # Scheduling
    max_concurrency: int = field(
        default_factory=lambda: _env_number("I18N_MAX_CONCURRENCY", "3", int)
    )
    task_timeout_seconds: float = field(
        default_factory=lambda: _env_number("I18N_TASK_TIMEOUT", "300", float)
    )
    isolation_mode: Literal["in_process", "thread", "process"] = field(
        default_factory=lambda: os.getenv("I18N_ISOLATION_MODE", "in_process")  # type: ignore
    )
    max_workers: int = field(
        default_factory=lambda: _env_number("I18N_MAX_WORKERS", "0", int) or get_optimal_workers()
    )
    run_deadline_seconds: float | None = field(
        default_factory=lambda: _env_number("I18N_RUN_DEADLINE", None, float)
    )

    # Caching
    response_ttl_seconds: float = field(
        default_factory=lambda: _env_number("I18N_RESPONSE_TTL", str(7 * SECONDS_PER_DAY), float)
    )
    response_max_entries: int = field(
        default_factory=lambda: _env_number("I18N_RESPONSE_MAX_ENTRIES", "1000", int)
    )
    track_revisions: bool = field(
        default_factory=lambda: _env_bool("I18N_TRACK_REVISIONS", "true")
    )

    # Scanning
    prioritize_by: str = field(
        default_factory=lambda: os.getenv("I18N_PRIORITIZE_BY", SortKey.COUNT.value)
    )
    qualifying_pattern: str = DEFAULT_QUALIFYING_PATTERN
    estimate_tokens: bool = field(
        default_factory=lambda: _env_bool("I18N_ESTIMATE_TOKENS", "true")
    )
    max_file_size_bytes: int = 1_000_000  # 1MB per file

    skipped_directories: Set[str] = field(default_factory=lambda: {
        ".git", "node_modules", "__pycache__", "venv", ".venv",
        "dist", "build", ".next", "out", "target", "vendor", ".cache",
        "coverage", ".nyc_output", ".turbo", "*.egg-info", ".tox",
        DEFAULT_CACHE_DIR,
    })

    # Priority markers, matched as substrings of the root-relative path
    critical_path_markers: tuple[str, ...] = ("error", "Error", "core", "hook")
    ui_path_markers: tuple[str, ...] = (
        "component", "Component", "form", "Form", "modal", "Modal",
    )

    # Monitoring
    progress_interval_seconds: float = field(
        default_factory=lambda: _env_number("I18N_PROGRESS_INTERVAL", "10", float)
    )
    metrics_history_size: int = 5

    @property
    def sort_key(self) -> SortKey:
        return SortKey(self.prioritize_by)

    @property
    def effective_run_deadline(self) -> float:
        """Whole-run deadline for isolated workers."""
        if self.run_deadline_seconds is not None:
            return self.run_deadline_seconds
        return self.task_timeout_seconds * 2

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.max_concurrency < 1:
            errors.append("max_concurrency must be at least 1")

        if self.task_timeout_seconds <= 0:
            errors.append("task_timeout_seconds must be positive")

        if self.isolation_mode not in ISOLATION_MODES:
            errors.append(f"isolation_mode must be one of {', '.join(ISOLATION_MODES)}, got {self.isolation_mode!r}")

        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")

        if self.run_deadline_seconds is not None and self.run_deadline_seconds <= 0:
            errors.append("run_deadline_seconds must be positive")

        if self.response_ttl_seconds <= 0:
            errors.append("response_ttl_seconds must be positive")

        if self.response_max_entries < 1:
            errors.append("response_max_entries must be at least 1")

        if self.prioritize_by not in {k.value for k in SortKey}:
            errors.append(f"prioritize_by must be one of count, size, modified, got {self.prioritize_by!r}")

        if not self.file_patterns:
            errors.append("file_patterns must not be empty")

        if self.progress_interval_seconds <= 0:
            errors.append("progress_interval_seconds must be positive")

        return errors

    def ensure_valid(self) -> None:
        """Raise ConfigurationError if validate() reports anything."""
        errors = self.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config() -> BatchConfig:
    """Get a configuration instance from the environment."""
    return BatchConfig()
