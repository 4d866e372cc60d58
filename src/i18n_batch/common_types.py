"""
Common types shared by the scanner, cache, scheduler and monitor.

Contains:
- Enums: Priority, TaskState, OutcomeKind, SortKey
- Dataclasses: CandidateFile, TranslatedString, TranslationOutcome
- Translator protocol
- Error taxonomy
- Worker sizing helper
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Protocol


class Priority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Bucket position: 0 runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}

PRIORITY_ORDER: tuple[Priority, ...] = (Priority.HIGH, Priority.MEDIUM, Priority.LOW)


class TaskState(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.SKIPPED)


class OutcomeKind(Enum):
    """Per-task outcome taxonomy."""
    CACHE_SKIP = "cache-skip"
    SUCCESS = "success"
    TIMEOUT = "timeout"
    TRANSLATOR_ERROR = "translator-error"
    UNEXPECTED = "unexpected-exception"
    CANCELLED = "cancelled"

    @property
    def task_state(self) -> TaskState:
        if self is OutcomeKind.CACHE_SKIP:
            return TaskState.SKIPPED
        if self is OutcomeKind.SUCCESS:
            return TaskState.COMPLETED
        return TaskState.FAILED


class SortKey(Enum):
    """Secondary ordering inside a priority group."""
    COUNT = "count"
    SIZE = "size"
    MODIFIED = "modified"


# =============================================================================
# ERRORS
# =============================================================================


class I18nBatchError(Exception):
    """Base class for all errors raised by this package."""


class ScanError(I18nBatchError):
    """A single file could not be read or analyzed during a scan."""

    def __init__(self, path: str, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class CacheCorruptionError(I18nBatchError):
    """A persisted cache record could not be parsed."""

    def __init__(self, record: str, message: str):
        super().__init__(f"Corrupted cache record {record}: {message}")
        self.record = record


class TranslatorError(I18nBatchError):
    """The external translator rejected a file."""


class TranslatorTimeoutError(TranslatorError):
    """The external translator did not settle within its time budget."""

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Processing timeout after {timeout:g}s: {path}")
        self.path = path
        self.timeout = timeout


class ConfigurationError(I18nBatchError):
    """Invalid configuration. Raised before any work starts."""


# =============================================================================
# CANDIDATES AND TRANSLATOR OUTCOMES
# =============================================================================


@dataclass
class CandidateFile:
    """A scanned source file that holds at least one qualifying literal."""
    path: str
    content_hash: str
    size_bytes: int
    match_count: int  # Distinct qualifying literals
    priority: Priority
    needs_processing: bool
    modified_at: float = 0.0
    relative_path: str = ""
    token_estimate: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "relative_path": self.relative_path,
            "content_hash": self.content_hash,
            "size_bytes": self.size_bytes,
            "match_count": self.match_count,
            "priority": self.priority.value,
            "needs_processing": self.needs_processing,
            "modified_at": self.modified_at,
            "token_estimate": self.token_estimate,
        }


@dataclass
class TranslatedString:
    """One literal handled by the translator."""
    original_text: str
    key: str
    translated_text: str

    def to_dict(self) -> dict[str, str]:
        return {
            "original_text": self.original_text,
            "key": self.key,
            "translated_text": self.translated_text,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TranslatedString":
        return cls(
            original_text=data.get("original_text", data.get("original", "")),
            key=data.get("key", ""),
            translated_text=data.get("translated_text", data.get("translation", "")),
        )


@dataclass
class TranslationOutcome:
    """Serializable result of one translator call."""
    strings: list[TranslatedString] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def string_count(self) -> int:
        return len(self.strings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strings": [s.to_dict() for s in self.strings],
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TranslationOutcome":
        if not data:
            return cls()
        return cls(
            strings=[TranslatedString.from_dict(s) for s in data.get("strings", [])],
            data=dict(data.get("data", {})),
        )

    @classmethod
    def coerce(cls, value: Any) -> "TranslationOutcome":
        """Accept an outcome, a dict, or None from a translator."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls.from_dict(value)
        raise TypeError(
            f"Translator returned {type(value).__name__}, expected TranslationOutcome or dict"
        )


class Translator(Protocol):
    """The external, opaque text-transformation capability."""

    def __call__(self, file_path: str, file_content: str) -> Awaitable[TranslationOutcome | dict]:
        ...


def get_optimal_workers(max_limit: int = 16, min_limit: int = 2) -> int:
    """
    Calculate a worker thread count from the CPU count.

    Formula: max(min_limit, min(max_limit, os.cpu_count() // 2))
    """
    cpu_count = os.cpu_count() or min_limit
    return max(min_limit, min(max_limit, cpu_count // 2))
