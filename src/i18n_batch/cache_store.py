"""
Translation Cache Store

Two-tier durable cache that decides which files need the translator and
remembers what it returned.

Features:
- Per-file fingerprint records (SHA-256 of content, optional git revision)
- Content-addressed string index for cross-file reuse of identical literals
- Generic response cache with TTL and age-based trimming
- Atomic JSON persistence, batched with deferred_writes()
- One lock serializing every mutation of the in-memory tables

Persisted layout (cache_dir):
- <sanitized-path>.cache     one FileCacheEntry per source file
- translation-strings.json   text_hash -> {original, key, translation, timestamp}
- responses.json             cache_key -> {payload, timestamp, expires_at}
"""

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Iterator

from .common_types import CacheCorruptionError, TranslationOutcome
from .profiling import LatencyTracker
from .utils import (
    atomic_write_json,
    hash_file,
    read_json_file,
    sanitize_path,
    sha256_text,
)
from .vcs import RevisionLookup, git_revision, no_revision

logger = logging.getLogger(__name__)


FILE_RECORD_SUFFIX = ".cache"
STRING_TABLE_FILE = "translation-strings.json"
RESPONSE_TABLE_FILE = "responses.json"

DEFAULT_RESPONSE_TTL_SECONDS = 7 * 24 * 60 * 60
DEFAULT_MAX_RESPONSE_ENTRIES = 1000
TRIM_TARGET_RATIO = 0.8

_STRINGS = "strings"
_RESPONSES = "responses"


@dataclass
class FileCacheEntry:
    """Fingerprint and result of the last successful run over one file."""
    file_path: str
    content_hash: str
    timestamp: float
    result_payload: dict[str, Any]
    revision: str | None = None

    @property
    def outcome(self) -> TranslationOutcome:
        return TranslationOutcome.from_dict(self.result_payload)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "file_path": self.file_path,
            "hash": self.content_hash,
            "timestamp": self.timestamp,
            "result": self.result_payload,
        }
        if self.revision:
            data["revision"] = self.revision
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileCacheEntry":
        return cls(
            file_path=data["file_path"],
            content_hash=data["hash"],
            timestamp=float(data["timestamp"]),
            result_payload=data.get("result") or {},
            revision=data.get("revision"),
        )


@dataclass
class StringCacheEntry:
    """One literal's translation, shared by every file containing it."""
    original: str
    key: str
    translation: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original,
            "key": self.key,
            "translation": self.translation,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StringCacheEntry":
        return cls(
            original=data["original"],
            key=data["key"],
            translation=data["translation"],
            timestamp=float(data.get("timestamp", 0)),
        )


@dataclass
class ResponseCacheEntry:
    """An opaque cached response with an absolute expiry."""
    cache_key: str
    payload: Any
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "timestamp": self.created_at,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, cache_key: str, data: dict[str, Any]) -> "ResponseCacheEntry":
        return cls(
            cache_key=cache_key,
            payload=data["payload"],
            created_at=float(data["timestamp"]),
            expires_at=float(data["expires_at"]),
        )


@dataclass
class ResponseCacheStats:
    """Hit/miss counters for the response cache."""
    hits: int = 0
    misses: int = 0
    expired: int = 0  # Evicted on read or load sweep
    trimmed: int = 0  # Evicted by the size cap

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "expired": self.expired,
            "trimmed": self.trimmed,
            "hit_rate": self.hit_rate,
        }


class CacheStore:
    """
    Durable fingerprint, string and response cache for one cache directory.

    One instance is created per pipeline run and passed by handle to the
    scanner, scheduler and cache manager.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        default_ttl: float = DEFAULT_RESPONSE_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_RESPONSE_ENTRIES,
        track_revisions: bool = True,
        revision_lookup: RevisionLookup | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the cache store and load persisted tables.

        Args:
            cache_dir: Directory holding every persisted record
            default_ttl: Response TTL in seconds when set() gets none
            max_entries: Response cache capacity before trimming
            track_revisions: Compare VCS revisions as a secondary signal
            revision_lookup: Callable returning the latest revision of a path
            clock: Time source (seconds), injectable for tests
        """
        self.cache_dir = Path(cache_dir)
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.track_revisions = track_revisions
        self._revision_lookup: RevisionLookup = (
            (revision_lookup or git_revision) if track_revisions else no_revision
        )
        self._clock = clock

        self.string_table_file = self.cache_dir / STRING_TABLE_FILE
        self.response_table_file = self.cache_dir / RESPONSE_TABLE_FILE

        self._lock = threading.RLock()
        self._strings: dict[str, StringCacheEntry] = {}
        self._responses: dict[str, ResponseCacheEntry] = {}
        self._stats = ResponseCacheStats()

        # Deferred persistence
        self._defer_depth = 0
        self._dirty: set[str] = set()

        # Tables that failed to parse on the last load
        self.load_errors: list[str] = []

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.reload()

    # -------------------------------------------------------------------------
    # Loading and persistence
    # -------------------------------------------------------------------------

    def reload(self) -> None:
        """Re-read both global tables from disk and sweep expired responses."""
        with self._lock:
            self.load_errors = []
            self._strings = self._load_string_table()
            self._responses = self._load_response_table()
            swept = self._sweep_expired()
            if swept:
                logger.info(f"[CACHE] Cleaned {swept} expired response entries")
                self._persist(_RESPONSES)

    def _load_string_table(self) -> dict[str, StringCacheEntry]:
        try:
            raw = read_json_file(self.string_table_file)
        except FileNotFoundError:
            return {}
        except CacheCorruptionError as e:
            logger.warning(f"[CACHE] Failed to load string cache: {e}")
            self.load_errors.append(STRING_TABLE_FILE)
            return {}

        entries: dict[str, StringCacheEntry] = {}
        if not isinstance(raw, dict):
            self.load_errors.append(STRING_TABLE_FILE)
            return entries
        for text_hash, data in raw.items():
            try:
                entries[text_hash] = StringCacheEntry.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.debug(f"[CACHE] Dropping malformed string entry {text_hash}")
        return entries

    def _load_response_table(self) -> dict[str, ResponseCacheEntry]:
        try:
            raw = read_json_file(self.response_table_file)
        except FileNotFoundError:
            return {}
        except CacheCorruptionError as e:
            logger.warning(f"[CACHE] Failed to load response cache: {e}")
            self.load_errors.append(RESPONSE_TABLE_FILE)
            return {}

        entries: dict[str, ResponseCacheEntry] = {}
        if not isinstance(raw, dict):
            self.load_errors.append(RESPONSE_TABLE_FILE)
            return entries
        for cache_key, data in raw.items():
            try:
                entries[cache_key] = ResponseCacheEntry.from_dict(cache_key, data)
            except (KeyError, TypeError, ValueError):
                logger.debug(f"[CACHE] Dropping malformed response entry {cache_key}")
        return entries

    def _sweep_expired(self) -> int:
        now = self._clock()
        expired = [k for k, v in self._responses.items() if v.is_expired(now)]
        for key in expired:
            del self._responses[key]
        self._stats.expired += len(expired)
        return len(expired)

    def _persist(self, table: str) -> None:
        """Write a table now, or mark it dirty while writes are deferred."""
        if self._defer_depth > 0:
            self._dirty.add(table)
            return
        self._write_table(table)

    def _write_table(self, table: str) -> None:
        try:
            if table == _STRINGS:
                atomic_write_json(
                    self.string_table_file,
                    {k: v.to_dict() for k, v in self._strings.items()},
                )
            else:
                atomic_write_json(
                    self.response_table_file,
                    {k: v.to_dict() for k, v in self._responses.items()},
                )
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[CACHE] Failed to save {table} table: {e}")

    def flush(self) -> None:
        """Write every dirty table."""
        with self._lock, LatencyTracker("flush"):
            dirty, self._dirty = self._dirty, set()
            for table in sorted(dirty):
                self._write_table(table)

    @contextmanager
    def deferred_writes(self) -> Iterator["CacheStore"]:
        """
        Batch table persistence.

        Mutations inside the block update memory immediately; the string and
        response tables are written once when the outermost block exits.
        File fingerprint records are always written immediately.
        """
        with self._lock:
            self._defer_depth += 1
        try:
            yield self
        finally:
            with self._lock:
                self._defer_depth -= 1
                if self._defer_depth == 0:
                    self.flush()

    # -------------------------------------------------------------------------
    # File fingerprint cache
    # -------------------------------------------------------------------------

    def record_path(self, file_path: str) -> Path:
        """Path of the fingerprint record for a source file."""
        return self.cache_dir / f"{sanitize_path(str(file_path))}{FILE_RECORD_SUFFIX}"

    def iter_file_records(self) -> list[Path]:
        """All fingerprint record files currently on disk."""
        return sorted(self.cache_dir.glob(f"*{FILE_RECORD_SUFFIX}"))

    def read_file_record(self, record: Path) -> FileCacheEntry:
        """
        Parse one fingerprint record.

        Raises:
            FileNotFoundError: if the record does not exist
            CacheCorruptionError: if it cannot be parsed
        """
        data = read_json_file(record)
        try:
            return FileCacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorruptionError(record.name, f"missing or invalid field: {e}") from e

    def get_file_cache(self, file_path: str) -> FileCacheEntry | None:
        """Stored entry for a file, or None if absent or unreadable."""
        try:
            return self.read_file_record(self.record_path(file_path))
        except FileNotFoundError:
            return None
        except CacheCorruptionError as e:
            logger.warning(f"[CACHE] Error reading cache for {file_path}: {e}")
            return None

    def needs_translation(self, file_path: str, content_hash: str | None = None) -> bool:
        """
        Check whether a file must go through the translator again.

        Args:
            file_path: Source file path
            content_hash: Hash of the current content if already computed

        Returns:
            True if the file has no record, the record is unreadable, the
            content hash changed, or a tracked revision changed
        """
        try:
            entry = self.read_file_record(self.record_path(file_path))
        except FileNotFoundError:
            return True
        except CacheCorruptionError as e:
            logger.warning(f"[CACHE] Error checking cache for {file_path}: {e}")
            return True

        if content_hash is None:
            try:
                content_hash = hash_file(file_path)
            except OSError as e:
                logger.warning(f"[CACHE] Cannot hash {file_path}: {e}")
                return True

        if entry.content_hash != content_hash:
            return True

        # Secondary signal: only when both sides know a revision
        if self.track_revisions and entry.revision:
            current_revision = self._revision_lookup(file_path)
            if current_revision and current_revision != entry.revision:
                return True

        return False

    def save(self, file_path: str, payload: TranslationOutcome | dict | None = None) -> bool:
        """
        Record a successful run over a file.

        Recomputes the content hash (and revision when available), writes the
        fingerprint record, and indexes every translated literal.

        Returns:
            True if the fingerprint record was written
        """
        outcome = TranslationOutcome.coerce(payload)

        try:
            content_hash = hash_file(file_path)
        except OSError as e:
            logger.error(f"[CACHE] Failed to save cache for {file_path}: {e}")
            return False

        revision = self._revision_lookup(file_path) if self.track_revisions else None

        entry = FileCacheEntry(
            file_path=str(file_path),
            content_hash=content_hash,
            timestamp=self._clock(),
            result_payload=outcome.to_dict(),
            revision=revision,
        )

        with self._lock:
            try:
                atomic_write_json(self.record_path(file_path), entry.to_dict())
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"[CACHE] Failed to save cache for {file_path}: {e}")
                return False

            if outcome.strings:
                now = self._clock()
                for s in outcome.strings:
                    self._strings[sha256_text(s.original_text)] = StringCacheEntry(
                        original=s.original_text,
                        key=s.key,
                        translation=s.translated_text,
                        timestamp=now,
                    )
                self._persist(_STRINGS)

        return True

    def invalidate_file(self, file_path: str) -> bool:
        """Drop a file's fingerprint record. Returns True if one existed."""
        with self._lock:
            try:
                self.record_path(file_path).unlink()
                return True
            except FileNotFoundError:
                return False

    # -------------------------------------------------------------------------
    # String index
    # -------------------------------------------------------------------------

    def get_translation(self, text: str) -> StringCacheEntry | None:
        """Cached translation of a literal, keyed by its content hash."""
        with self._lock:
            return self._strings.get(sha256_text(text))

    def save_translation(self, text: str, key: str, translation: str) -> None:
        with self._lock:
            self._strings[sha256_text(text)] = StringCacheEntry(
                original=text,
                key=key,
                translation=translation,
                timestamp=self._clock(),
            )
            self._persist(_STRINGS)

    def batch_check_translations(self, texts: Iterable[str]) -> dict[str, StringCacheEntry]:
        """Map each text that has a cached translation to its entry."""
        results: dict[str, StringCacheEntry] = {}
        with self._lock:
            for text in texts:
                cached = self._strings.get(sha256_text(text))
                if cached is not None:
                    results[text] = cached
        return results

    @property
    def string_count(self) -> int:
        return len(self._strings)

    def string_entries(self) -> dict[str, StringCacheEntry]:
        with self._lock:
            return dict(self._strings)

    # -------------------------------------------------------------------------
    # Response cache
    # -------------------------------------------------------------------------

    @staticmethod
    def response_key(file_path: str, file_content: str, operation: str = "translate") -> str:
        """Cache key for a (path, content) pair."""
        path_hash = sha256_text(str(file_path))[:32]
        return f"{operation}:{path_hash}:{sha256_text(file_content)}"

    @staticmethod
    def text_response_key(text: str, operation: str = "translate", context: str | None = None) -> str:
        """Cache key for a single text, optionally scoped by context."""
        key = f"{operation}:text:{sha256_text(text)}"
        if context:
            key += f":{sha256_text(context)}"
        return key

    def get(self, cache_key: str) -> Any | None:
        """
        Cached payload for a key, or None on a miss.

        An expired entry is evicted by the read that discovers it.
        """
        with self._lock:
            entry = self._responses.get(cache_key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._responses[cache_key]
                self._stats.expired += 1
                self._stats.misses += 1
                self._persist(_RESPONSES)
                return None

            self._stats.hits += 1
            return entry.payload

    def set(self, cache_key: str, payload: Any, ttl: float | None = None) -> None:
        """Cache a payload for ttl seconds (default_ttl when None)."""
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._responses[cache_key] = ResponseCacheEntry(
                cache_key=cache_key,
                payload=payload,
                created_at=now,
                expires_at=now + ttl,
            )
            if len(self._responses) > self.max_entries:
                self._trim_responses(keep=cache_key)
            self._persist(_RESPONSES)

    def _trim_responses(self, keep: str | None = None) -> None:
        """
        Drop the oldest entries by creation time down to 80% of capacity.

        At least one entry survives, and the entry named by keep is never dropped.
        """
        target = max(1, int(self.max_entries * TRIM_TARGET_RATIO))
        ordered = sorted(
            (e for e in self._responses.values() if e.cache_key != keep),
            key=lambda e: e.created_at,
        )
        if keep in self._responses:
            target -= 1
        to_remove = max(0, len(ordered) - target)
        for entry in ordered[:to_remove]:
            del self._responses[entry.cache_key]
        self._stats.trimmed += to_remove
        logger.debug(f"[CACHE] Trimmed {to_remove} response entries (cap {self.max_entries})")

    def invalidate_by_pattern(self, pattern: str | re.Pattern) -> int:
        """Remove every response whose key matches the regex. Returns the count."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        with self._lock:
            matched = [k for k in self._responses if regex.search(k)]
            for key in matched:
                del self._responses[key]
            if matched:
                self._persist(_RESPONSES)
        return len(matched)

    def remove_expired(self) -> int:
        """Sweep expired responses. Returns the number removed."""
        with self._lock:
            swept = self._sweep_expired()
            if swept:
                self._persist(_RESPONSES)
        return swept

    def clear(self) -> None:
        """Remove every response entry."""
        with self._lock:
            self._responses.clear()
            self._persist(_RESPONSES)
        logger.info("[CACHE] Response cache cleared")

    def batch_check(self, cache_keys: Iterable[str]) -> dict[str, Any]:
        """Map each key with a live entry to its payload."""
        results: dict[str, Any] = {}
        for key in cache_keys:
            cached = self.get(key)
            if cached is not None:
                results[key] = cached
        return results

    async def cached_file_translation(
        self,
        file_path: str,
        file_content: str,
        translation_fn: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Read-through wrapper: return the cached response or call and cache."""
        cache_key = self.response_key(file_path, file_content)
        cached = self.get(cache_key)
        if cached is not None:
            logger.info(f"[CACHE] Using cached translation for {Path(file_path).name}")
            return cached

        logger.info(f"[CACHE] Translating {Path(file_path).name} (not cached)")
        result = await translation_fn()
        self.set(cache_key, result, ttl)
        return result

    async def cached_text_translation(
        self,
        text: str,
        translation_fn: Callable[[], Awaitable[Any]],
        context: str | None = None,
        ttl: float | None = None,
    ) -> Any:
        """Read-through wrapper for a single text."""
        cache_key = self.text_response_key(text, "translate", context)
        cached = self.get(cache_key)
        if cached is not None:
            return cached

        result = await translation_fn()
        self.set(cache_key, result, ttl)
        return result

    def preload_responses(self, items: Iterable[tuple[str, str, Any]]) -> int:
        """
        Seed the response cache from known (path, content, result) triples.

        Existing keys are left untouched. Returns the number loaded.
        """
        loaded = 0
        with self.deferred_writes():
            for file_path, file_content, result in items:
                cache_key = self.response_key(file_path, file_content)
                with self._lock:
                    exists = cache_key in self._responses
                if not exists:
                    self.set(cache_key, result)
                    loaded += 1
        if loaded:
            logger.info(f"[CACHE] Preloaded {loaded} translation results")
        return loaded

    @property
    def response_count(self) -> int:
        return len(self._responses)

    def response_entries(self) -> dict[str, ResponseCacheEntry]:
        with self._lock:
            return dict(self._responses)

    def response_stats(self) -> ResponseCacheStats:
        return self._stats

    def now(self) -> float:
        """Current time on this store's clock."""
        return self._clock()
