"""
Cache Manager for the translation cache directory

Administrative operations over a CacheStore: statistics, cleanup,
integrity checks, export/import and full reset.

Key features:
- Disk usage and entry statistics
- Age-based cleanup of fingerprint records, temp files and logs
- Verification with optional repair of corrupted records and tables
- Single-document export and merge/replace import
"""

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .cache_store import (
    FILE_RECORD_SUFFIX,
    RESPONSE_TABLE_FILE,
    STRING_TABLE_FILE,
    CacheStore,
)
from .common_types import CacheCorruptionError
from .utils import (
    atomic_write_json,
    format_kb,
    format_timestamp,
    read_json_file,
)

logger = logging.getLogger(__name__)


EXPORT_FORMAT_VERSION = "1.0"
LAST_CLEANUP_FILE = ".last-cleanup"
GITIGNORE_FILE = ".gitignore"
GITIGNORE_CONTENT = "# Translation cache files\n*.cache\n*.json\n*.log\n"
SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class CacheStats:
    """Snapshot of what the cache directory holds."""
    file_count: int = 0
    string_count: int = 0
    response_count: int = 0
    expired_responses: int = 0
    total_bytes: int = 0
    oldest_file_entry: str | None = None
    newest_file_entry: str | None = None
    last_cleanup: str | None = None
    response_hit_rate: float = 0.0

    @property
    def total_size(self) -> str:
        return format_kb(self.total_bytes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_count": self.file_count,
            "string_count": self.string_count,
            "response_count": self.response_count,
            "expired_responses": self.expired_responses,
            "total_bytes": self.total_bytes,
            "total_size": self.total_size,
            "oldest_file_entry": self.oldest_file_entry,
            "newest_file_entry": self.newest_file_entry,
            "last_cleanup": self.last_cleanup,
            "response_hit_rate": self.response_hit_rate,
        }


@dataclass
class CleanupResult:
    files_removed: int = 0
    corrupted_removed: int = 0
    expired_removed: int = 0
    bytes_reclaimed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def space_saved(self) -> str:
        return format_kb(self.bytes_reclaimed)


@dataclass
class VerifyResult:
    valid: int = 0
    corrupted: int = 0
    repaired: int = 0
    errors: list[str] = field(default_factory=list)


class CacheManager:
    """
    Administrative facade over a CacheStore.

    cleanup() and verify() report problems in their results and never raise.
    """

    def __init__(self, cache: CacheStore):
        self.cache = cache
        self.cache_dir = cache.cache_dir

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def stats(self) -> CacheStats:
        result = CacheStats(
            string_count=self.cache.string_count,
            response_count=self.cache.response_count,
            response_hit_rate=self.cache.response_stats().hit_rate * 100,
        )

        now = self.cache.now()
        result.expired_responses = sum(
            1 for e in self.cache.response_entries().values() if e.is_expired(now)
        )

        timestamps: list[float] = []
        for record in self.cache.iter_file_records():
            result.file_count += 1
            try:
                timestamps.append(self.cache.read_file_record(record).timestamp)
            except (OSError, CacheCorruptionError):
                continue

        if timestamps:
            result.oldest_file_entry = format_timestamp(min(timestamps))
            result.newest_file_entry = format_timestamp(max(timestamps))

        for item in self.cache_dir.iterdir():
            try:
                if item.is_file():
                    result.total_bytes += item.stat().st_size
            except OSError:
                continue

        marker = self.cache_dir / LAST_CLEANUP_FILE
        try:
            result.last_cleanup = marker.read_text(encoding="utf-8").strip() or None
        except OSError:
            result.last_cleanup = None

        return result

    def display_stats(self) -> CacheStats:
        s = self.stats()
        lines = [
            "Translation Cache Statistics",
            "=" * 50,
            "Fingerprint cache:",
            f"  Files cached: {s.file_count}",
            f"  Strings cached: {s.string_count}",
            f"  Oldest: {s.oldest_file_entry or 'N/A'}",
            f"  Newest: {s.newest_file_entry or 'N/A'}",
            "Response cache:",
            f"  Entries: {s.response_count}",
            f"  Expired: {s.expired_responses}",
            f"  Hit rate: {s.response_hit_rate:.1f}%",
            "Overall:",
            f"  Total size: {s.total_size}",
            f"  Last cleanup: {s.last_cleanup or 'Never'}",
            "=" * 50,
        ]
        logger.info("[CACHE]\n" + "\n".join(lines))
        return s

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    def cleanup(
        self,
        max_age_in_days: float = 30,
        remove_corrupted: bool = True,
        remove_expired: bool = True,
    ) -> CleanupResult:
        """
        Remove stale cache data.

        Args:
            max_age_in_days: Fingerprint records and logs older than this go
            remove_corrupted: Delete fingerprint records that cannot be parsed
            remove_expired: Sweep expired response entries

        Returns:
            CleanupResult with counts, bytes reclaimed and any errors
        """
        result = CleanupResult()
        cutoff = self.cache.now() - max_age_in_days * SECONDS_PER_DAY
        logger.info(f"[CACHE] Starting cleanup (max age: {max_age_in_days} days)")

        try:
            for record in self.cache.iter_file_records():
                try:
                    entry = self.cache.read_file_record(record)
                except CacheCorruptionError:
                    if remove_corrupted:
                        self._remove(record, result)
                        result.corrupted_removed += 1
                    continue
                except FileNotFoundError:
                    continue
                if entry.timestamp < cutoff:
                    if self._remove(record, result):
                        result.files_removed += 1

            if remove_expired:
                result.expired_removed = self.cache.remove_expired()

            for item in self.cache_dir.iterdir():
                if not item.is_file():
                    continue
                if item.name.endswith(".tmp") or item.name.startswith(".tmp"):
                    if self._remove(item, result):
                        result.files_removed += 1
                elif item.suffix == ".log" and item.stat().st_mtime < cutoff:
                    if self._remove(item, result):
                        result.files_removed += 1

            (self.cache_dir / LAST_CLEANUP_FILE).write_text(
                format_timestamp(time.time()) or "", encoding="utf-8"
            )
        except Exception as e:
            logger.exception("[CACHE] Cleanup failed")
            result.errors.append(f"Cleanup error: {e}")

        logger.info(
            f"[CACHE] Cleanup complete: {result.files_removed} files removed, "
            f"{result.corrupted_removed} corrupted, {result.expired_removed} expired responses, "
            f"{result.space_saved} saved"
        )
        return result

    @staticmethod
    def _remove(path: Path, result: CleanupResult) -> bool:
        try:
            size = path.stat().st_size
            path.unlink()
        except OSError as e:
            result.errors.append(f"Failed to remove {path.name}: {e}")
            return False
        result.bytes_reclaimed += size
        return True

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify(self, fix: bool = False) -> VerifyResult:
        """
        Check every fingerprint record and both global tables.

        With fix, corrupted records are deleted, corrupted tables are backed
        up and recreated empty, and a missing .gitignore is written.
        """
        result = VerifyResult()
        logger.info("[CACHE] Verifying cache integrity")

        try:
            for record in self.cache.iter_file_records():
                try:
                    self.cache.read_file_record(record)
                    result.valid += 1
                except FileNotFoundError:
                    continue
                except CacheCorruptionError:
                    result.corrupted += 1
                    if fix:
                        try:
                            record.unlink()
                            result.repaired += 1
                        except OSError as e:
                            result.errors.append(f"Failed to remove {record.name}: {e}")

            repaired_table = False
            for table in (STRING_TABLE_FILE, RESPONSE_TABLE_FILE):
                status = self._verify_table(self.cache_dir / table, fix, result)
                repaired_table = repaired_table or status

            if repaired_table:
                self.cache.reload()

            gitignore = self.cache_dir / GITIGNORE_FILE
            if fix and not gitignore.exists():
                gitignore.write_text(GITIGNORE_CONTENT, encoding="utf-8")
                result.repaired += 1
        except Exception as e:
            logger.exception("[CACHE] Verification failed")
            result.errors.append(f"Verification error: {e}")

        logger.info(
            f"[CACHE] Verification complete: {result.valid} valid, "
            f"{result.corrupted} corrupted, {result.repaired} repaired"
        )
        return result

    def _verify_table(self, table: Path, fix: bool, result: VerifyResult) -> bool:
        """Returns True if the table was repaired."""
        try:
            data = read_json_file(table)
        except FileNotFoundError:
            return False
        except CacheCorruptionError:
            data = None

        if isinstance(data, dict):
            result.valid += 1
            return False

        result.corrupted += 1
        if not fix:
            return False

        backup = table.with_name(f"{table.name}.backup.{int(time.time() * 1000)}")
        try:
            shutil.copyfile(table, backup)
            atomic_write_json(table, {})
        except OSError as e:
            result.errors.append(f"Failed to repair {table.name}: {e}")
            return False

        result.repaired += 1
        logger.warning(f"[CACHE] Repaired corrupted {table.name} (backup saved to {backup.name})")
        return True

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------

    def export_cache(self, output_file: str | Path) -> dict[str, Any]:
        """
        Write the full cache state to one JSON document.

        Raises:
            OSError: if the document cannot be written
        """
        self.cache.flush()

        files = []
        for record in self.cache.iter_file_records():
            try:
                files.append({"file": record.name, "data": read_json_file(record)})
            except (OSError, CacheCorruptionError) as e:
                logger.warning(f"[CACHE] Skipping unreadable record {record.name}: {e}")

        export_data = {
            "version": EXPORT_FORMAT_VERSION,
            "timestamp": format_timestamp(time.time()),
            "files": files,
            "strings": {k: v.to_dict() for k, v in self.cache.string_entries().items()},
            "responses": {k: v.to_dict() for k, v in self.cache.response_entries().items()},
            "stats": self.stats().to_dict(),
        }

        atomic_write_json(output_file, export_data)
        logger.info(f"[CACHE] Exported cache to {output_file}")
        return export_data

    def import_cache(self, input_file: str | Path, merge: bool = True) -> None:
        """
        Load a document written by export_cache().

        Merge overlays imported entries on the current ones; replace clears
        the cache first.

        Raises:
            FileNotFoundError: if input_file does not exist
            CacheCorruptionError: if it is not valid JSON
        """
        import_data = read_json_file(input_file)
        if not isinstance(import_data, dict):
            raise CacheCorruptionError(Path(input_file).name, "export document must be an object")

        if not merge:
            self.clear_cache()

        self.cache.flush()

        for item in import_data.get("files", []):
            name = Path(str(item.get("file", ""))).name
            if not name.endswith(FILE_RECORD_SUFFIX):
                logger.warning(f"[CACHE] Ignoring imported record with bad name {name!r}")
                continue
            atomic_write_json(self.cache_dir / name, item.get("data"))

        for table, key in ((STRING_TABLE_FILE, "strings"), (RESPONSE_TABLE_FILE, "responses")):
            imported = import_data.get(key)
            if not imported:
                continue
            existing: dict[str, Any] = {}
            if merge:
                try:
                    current = read_json_file(self.cache_dir / table)
                    if isinstance(current, dict):
                        existing = current
                except (FileNotFoundError, CacheCorruptionError):
                    existing = {}
            atomic_write_json(self.cache_dir / table, {**existing, **imported})

        self.cache.reload()
        logger.info(f"[CACHE] Imported cache from {input_file} ({'merge' if merge else 'replace'})")

    # -------------------------------------------------------------------------
    # Reset
    # -------------------------------------------------------------------------

    def clear_cache(self) -> int:
        """Delete every non-hidden file in the cache directory. Returns the count."""
        removed = 0
        for item in self.cache_dir.iterdir():
            if item.name.startswith(".") or not item.is_file():
                continue
            try:
                item.unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"[CACHE] Failed to remove {item.name}: {e}")
        self.cache.reload()
        logger.info(f"[CACHE] Cleared {removed} cache files")
        return removed
