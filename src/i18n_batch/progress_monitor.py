"""
Progress Monitor for batch translation sessions

Tracks task lifecycle, estimates remaining time, and keeps a short history
of session performance.

Features:
- Task state machine driven by scheduler lifecycle events
- Running average time per file and ETA
- Periodic progress snapshots on an asyncio task
- Performance metrics persisted across sessions (last 5 kept)
- Session snapshot persisted on every transition (best-effort)
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .common_types import CacheCorruptionError, OutcomeKind, Priority, TaskState
from .progress_callbacks import TaskEvent, TaskEventType, TaskListener
from .utils import atomic_write_json, format_duration, format_timestamp, read_json_file

logger = logging.getLogger(__name__)


METRICS_FILE = "performance-metrics.json"
SESSION_FILE = "translation-session.json"

DEFAULT_HISTORY_SIZE = 5
DEFAULT_TASK_HISTORY_SIZE = 1000

# Lifecycle events write the session file at most this often (seconds)
DEFAULT_SESSION_SAVE_INTERVAL = 2.0

# Per-file cost assumed for cache savings when no file has completed yet
FALLBACK_SECONDS_PER_FILE = 60.0


@dataclass
class TaskRecord:
    """One file's progress through a session."""
    task_id: str
    path: str
    priority: Priority = Priority.LOW
    state: TaskState = TaskState.PENDING
    started_at: float | None = None
    finished_at: float | None = None
    error: str | None = None
    progress: float = 0.0
    outcome_kind: OutcomeKind | None = None
    dispatch_index: int = -1
    total_strings: int = 0
    translated_strings: int = 0

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": self.path,
            "priority": self.priority.value,
            "state": self.state.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
            "progress": self.progress,
            "outcome_kind": self.outcome_kind.value if self.outcome_kind else None,
            "dispatch_index": self.dispatch_index,
            "total_strings": self.total_strings,
            "translated_strings": self.translated_strings,
        }


@dataclass
class Session:
    session_id: str
    total_files: int
    started_at: float
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    total_strings: int = 0
    translated_strings: int = 0
    ended_at: float | None = None
    average_time_per_file: float = 0.0
    estimated_time_remaining: float = 0.0

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.skipped

    @property
    def remaining(self) -> int:
        return max(0, self.total_files - self.finished)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PerformanceMetrics:
    """End-of-session figures. Times in seconds, rates in percent."""
    total_time: float
    average_time_per_file: float
    average_time_per_string: float
    cache_hit_rate: float
    success_rate: float
    throughput: float  # Files per minute
    session_id: str = ""
    recorded_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PerformanceMetrics":
        return cls(
            total_time=float(data.get("total_time", 0)),
            average_time_per_file=float(data.get("average_time_per_file", 0)),
            average_time_per_string=float(data.get("average_time_per_string", 0)),
            cache_hit_rate=float(data.get("cache_hit_rate", 0)),
            success_rate=float(data.get("success_rate", 0)),
            throughput=float(data.get("throughput", 0)),
            session_id=data.get("session_id", ""),
            recorded_at=float(data.get("recorded_at", 0)),
        )


@dataclass
class ProgressSnapshot:
    """Point-in-time view of a running session."""
    percentage: float
    done: int
    total: int
    completed: int
    skipped: int
    failed: int
    elapsed: float
    eta: float | None
    translated_strings: int
    total_strings: int
    in_progress: list[tuple[str, float]] = field(default_factory=list)

    def format(self) -> str:
        eta = format_duration(self.eta) if self.eta is not None else "calculating..."
        lines = [
            f"Progress: {self.percentage:.1f}% ({self.done}/{self.total})",
            f"Elapsed: {format_duration(self.elapsed)} | ETA: {eta}",
            f"Completed: {self.completed} | Skipped: {self.skipped} | Failed: {self.failed}",
            f"Strings: {self.translated_strings}/{self.total_strings}",
        ]
        if self.in_progress:
            lines.append("Currently processing:")
            lines.extend(f"  {name} ({progress:.1f}%)" for name, progress in self.in_progress)
        return "\n".join(lines)


@dataclass
class PerformanceComparison:
    current: PerformanceMetrics
    average: dict[str, float]
    improvement: dict[str, float]


SnapshotCallback = Callable[[ProgressSnapshot], None]


class ProgressMonitor(TaskListener):
    """
    Session-level progress tracking.

    Records are mutated only here; the scheduler talks to the monitor
    through lifecycle events.
    """

    def __init__(
        self,
        cache_dir: str | Path,
        total_files: int = 0,
        session_id: str | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        task_history_size: int = DEFAULT_TASK_HISTORY_SIZE,
        session_save_interval: float = DEFAULT_SESSION_SAVE_INTERVAL,
        snapshot_callbacks: Optional[list[SnapshotCallback]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cache_dir = Path(cache_dir)
        self.metrics_file = self.cache_dir / METRICS_FILE
        self.session_file = self.cache_dir / SESSION_FILE
        self.history_size = history_size
        self.snapshot_callbacks: list[SnapshotCallback] = list(snapshot_callbacks or [])
        self._clock = clock
        self.session_save_interval = session_save_interval
        self._last_session_save: float | None = None
        self._session_dirty = False

        self.session = Session(
            session_id=session_id or uuid.uuid4().hex[:12],
            total_files=total_files,
            started_at=clock(),
        )

        self._active: dict[str, TaskRecord] = {}
        self._finished: deque[TaskRecord] = deque(maxlen=task_history_size)
        self._finished_ids: set[str] = set()

        # Running sum over COMPLETED tasks
        self._completed_duration = 0.0
        self._completed_count = 0

        self._refresh_task: asyncio.Task | None = None
        self.metrics_history: list[PerformanceMetrics] = self._load_metrics_history()
        self._prior_history = list(self.metrics_history)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_metrics_history(self) -> list[PerformanceMetrics]:
        try:
            data = read_json_file(self.metrics_file)
        except FileNotFoundError:
            return []
        except CacheCorruptionError as e:
            logger.warning(f"[PROGRESS] Failed to load performance metrics: {e}")
            return []

        items = data.get("metrics", []) if isinstance(data, dict) else []
        history = []
        for item in items:
            try:
                history.append(PerformanceMetrics.from_dict(item))
            except (TypeError, ValueError, AttributeError):
                logger.debug("[PROGRESS] Dropping malformed metrics entry")
        return history[-self.history_size:]

    def _save_metrics_history(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.metrics_file, {
                "metrics": [m.to_dict() for m in self.metrics_history],
                "last_updated": format_timestamp(self._clock()),
            })
        except OSError as e:
            logger.warning(f"[PROGRESS] Failed to save performance metrics: {e}")

    def _save_session(self, force: bool = False) -> None:
        """Write the session file, throttled unless forced."""
        now = self._clock()
        if (
            not force
            and self._last_session_save is not None
            and now - self._last_session_save < self.session_save_interval
        ):
            self._session_dirty = True
            return
        self._last_session_save = now
        self._session_dirty = False
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            atomic_write_json(self.session_file, {
                "session": self.session.to_dict(),
                "tasks": [t.to_dict() for t in self.tasks()],
                "timestamp": format_timestamp(self._clock()),
            })
        except OSError as e:
            logger.warning(f"[PROGRESS] Failed to save session data: {e}")

    # -------------------------------------------------------------------------
    # Task lifecycle
    # -------------------------------------------------------------------------

    def on_task_event(self, event: TaskEvent) -> None:
        if event.type == TaskEventType.STARTED:
            self.start_task(
                event.task_id,
                event.path,
                priority=event.priority,
                total_strings=event.total_strings,
                dispatch_index=event.dispatch_index,
                started_at=event.timestamp,
            )
            return

        if event.task_id not in self._active and event.task_id not in self._finished_ids:
            # Finished without a start event
            self.start_task(event.task_id, event.path, priority=event.priority, started_at=event.timestamp)

        kind = event.outcome or OutcomeKind.UNEXPECTED
        if kind == OutcomeKind.SUCCESS:
            self.complete_task(event.task_id, event.translated_strings, finished_at=event.timestamp)
        elif kind == OutcomeKind.CACHE_SKIP:
            self.complete_task(event.task_id, skipped=True, finished_at=event.timestamp)
        else:
            self.fail_task(event.task_id, event.error or kind.value, kind=kind, finished_at=event.timestamp)

    def start_task(
        self,
        task_id: str,
        path: str,
        priority: Priority = Priority.LOW,
        total_strings: int = 0,
        dispatch_index: int = -1,
        started_at: float | None = None,
    ) -> TaskRecord | None:
        """PENDING -> PROCESSING."""
        if task_id in self._finished_ids:
            return self.get_task(task_id)
        record = self._active.get(task_id)
        if record is None:
            record = TaskRecord(task_id=task_id, path=path, priority=priority)
            self._active[task_id] = record
        if record.state != TaskState.PENDING:
            return record

        record.state = TaskState.PROCESSING
        record.started_at = started_at if started_at is not None else self._clock()
        record.total_strings = total_strings
        record.dispatch_index = dispatch_index

        self.session.total_strings += total_strings
        # Keep finished <= total when callers under-report the session size
        if len(self._active) + len(self._finished_ids) > self.session.total_files:
            self.session.total_files = len(self._active) + len(self._finished_ids)

        self._save_session()
        logger.info(f"[PROGRESS] Starting: {Path(path).name} ({total_strings} strings)")
        return record

    def update_task_progress(
        self,
        task_id: str,
        progress: float,
        translated_strings: int | None = None,
    ) -> None:
        record = self._active.get(task_id)
        if record is None or record.state != TaskState.PROCESSING:
            return

        record.progress = min(100.0, max(0.0, progress))
        if translated_strings is not None:
            self.session.translated_strings += translated_strings - record.translated_strings
            record.translated_strings = translated_strings
        self._update_estimates()

    def complete_task(
        self,
        task_id: str,
        translated_strings: int = 0,
        skipped: bool = False,
        finished_at: float | None = None,
    ) -> None:
        """PROCESSING -> COMPLETED or SKIPPED."""
        record = self._active.get(task_id)
        if record is None or record.state != TaskState.PROCESSING:
            return

        record.finished_at = finished_at if finished_at is not None else self._clock()
        record.progress = 100.0

        if skipped:
            record.state = TaskState.SKIPPED
            record.outcome_kind = OutcomeKind.CACHE_SKIP
            self.session.skipped += 1
            logger.info(f"[PROGRESS] Skipped: {Path(record.path).name} (cached)")
        else:
            record.state = TaskState.COMPLETED
            record.outcome_kind = OutcomeKind.SUCCESS
            self.session.completed += 1
            self.session.translated_strings += translated_strings - record.translated_strings
            record.translated_strings = translated_strings
            self._completed_duration += record.duration or 0.0
            self._completed_count += 1
            logger.info(
                f"[PROGRESS] Completed: {Path(record.path).name} "
                f"({translated_strings} strings, {record.duration or 0.0:.1f}s)"
            )

        self._retire(record)
        self._update_estimates()
        self._save_session()

    def fail_task(
        self,
        task_id: str,
        error: str,
        kind: OutcomeKind = OutcomeKind.UNEXPECTED,
        finished_at: float | None = None,
    ) -> None:
        """PROCESSING -> FAILED."""
        record = self._active.get(task_id)
        if record is None or record.state != TaskState.PROCESSING:
            return

        record.state = TaskState.FAILED
        record.outcome_kind = kind
        record.finished_at = finished_at if finished_at is not None else self._clock()
        record.error = error
        self.session.failed += 1

        self._retire(record)
        self._update_estimates()
        self._save_session()
        logger.error(f"[PROGRESS] Failed: {Path(record.path).name} - {error}")

    def _retire(self, record: TaskRecord) -> None:
        del self._active[record.task_id]
        self._finished.append(record)
        self._finished_ids.add(record.task_id)

    def _update_estimates(self) -> None:
        if self._completed_count == 0:
            return
        self.session.average_time_per_file = self._completed_duration / self._completed_count
        self.session.estimated_time_remaining = (
            self.session.remaining * self.session.average_time_per_file
        )

    def get_task(self, task_id: str) -> TaskRecord | None:
        if task_id in self._active:
            return self._active[task_id]
        for record in self._finished:
            if record.task_id == task_id:
                return record
        return None

    def tasks(self) -> list[TaskRecord]:
        """Active records followed by retained finished records."""
        return list(self._active.values()) + list(self._finished)

    @property
    def processing_count(self) -> int:
        return sum(1 for r in self._active.values() if r.state == TaskState.PROCESSING)

    def get_session_summary(self) -> Session:
        return Session(**asdict(self.session))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def snapshot(self) -> ProgressSnapshot:
        s = self.session
        done = s.completed + s.skipped
        return ProgressSnapshot(
            percentage=(done / s.total_files * 100) if s.total_files > 0 else 0.0,
            done=done,
            total=s.total_files,
            completed=s.completed,
            skipped=s.skipped,
            failed=s.failed,
            elapsed=self._clock() - s.started_at,
            eta=s.estimated_time_remaining if s.average_time_per_file > 0 else None,
            translated_strings=s.translated_strings,
            total_strings=s.total_strings,
            in_progress=[
                (Path(r.path).name, r.progress)
                for r in self._active.values()
                if r.state == TaskState.PROCESSING
            ],
        )

    def display_progress(self) -> ProgressSnapshot:
        """Log a snapshot and hand it to snapshot callbacks."""
        snap = self.snapshot()
        logger.info(f"[PROGRESS]\n{snap.format()}")
        if self._session_dirty:
            self._save_session(force=True)
        for callback in self.snapshot_callbacks:
            try:
                callback(snap)
            except Exception as e:
                logger.exception(f"[PROGRESS] Snapshot callback failed: {e}")
        return snap

    def start_progress_updates(self, interval: float = 10.0) -> None:
        """Emit a snapshot every interval seconds. Requires a running event loop."""
        self.stop_progress_updates()
        self._refresh_task = asyncio.get_running_loop().create_task(self._progress_loop(interval))

    async def _progress_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.display_progress()

    def stop_progress_updates(self) -> None:
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None

    # -------------------------------------------------------------------------
    # Session completion
    # -------------------------------------------------------------------------

    def calculate_metrics(self) -> PerformanceMetrics:
        s = self.session
        end = s.ended_at if s.ended_at is not None else self._clock()
        total_time = end - s.started_at
        done = s.completed + s.skipped
        return PerformanceMetrics(
            total_time=total_time,
            average_time_per_file=s.average_time_per_file,
            average_time_per_string=total_time / s.translated_strings if s.translated_strings > 0 else 0.0,
            cache_hit_rate=(s.skipped / s.total_files * 100) if s.total_files > 0 else 0.0,
            success_rate=(done / s.total_files * 100) if s.total_files > 0 else 0.0,
            throughput=(done / (total_time / 60)) if total_time > 0 else 0.0,
            session_id=s.session_id,
            recorded_at=end,
        )

    def complete_session(self) -> PerformanceMetrics:
        self.stop_progress_updates()
        self.session.ended_at = self._clock()

        metrics = self.calculate_metrics()
        self.metrics_history.append(metrics)
        self.metrics_history = self.metrics_history[-self.history_size:]
        self._save_metrics_history()
        self._save_session(force=True)

        self._log_final_summary(metrics)
        return metrics

    def _log_final_summary(self, metrics: PerformanceMetrics) -> None:
        s = self.session
        lines = [
            "Translation Session Complete",
            "=" * 50,
            f"Files: {s.completed + s.skipped}/{s.total_files}",
            f"Completed: {s.completed}",
            f"Skipped (cached): {s.skipped}",
            f"Failed: {s.failed}",
            f"Strings translated: {s.translated_strings}",
            f"Total time: {metrics.total_time:.1f}s",
            f"Success rate: {metrics.success_rate:.1f}%",
            f"Cache hit rate: {metrics.cache_hit_rate:.1f}%",
            f"Throughput: {metrics.throughput:.1f} files/min",
        ]
        if metrics.average_time_per_file > 0:
            lines.append(f"Avg time per file: {metrics.average_time_per_file:.1f}s")
        if s.skipped > 0:
            lines.append(f"Time saved by cache: {self.estimated_time_saved():.0f}s")
        lines.append("=" * 50)
        logger.info("[PROGRESS]\n" + "\n".join(lines))

    def estimated_time_saved(self) -> float:
        per_file = self.session.average_time_per_file or FALLBACK_SECONDS_PER_FILE
        return self.session.skipped * per_file

    def get_performance_comparison(self) -> PerformanceComparison | None:
        """Current session against the mean of earlier sessions."""
        previous = self._prior_history[-self.history_size:]
        if not previous:
            return None

        current = self.calculate_metrics()
        n = len(previous)
        average = {
            "total_time": sum(m.total_time for m in previous) / n,
            "average_time_per_file": sum(m.average_time_per_file for m in previous) / n,
            "success_rate": sum(m.success_rate for m in previous) / n,
            "throughput": sum(m.throughput for m in previous) / n,
        }

        def _relative(new: float, old: float) -> float:
            return (new - old) / old * 100 if old else 0.0

        improvement = {
            "throughput": _relative(current.throughput, average["throughput"]),
            "success_rate": current.success_rate - average["success_rate"],
            # Positive when files got faster
            "average_time_per_file": -_relative(
                current.average_time_per_file, average["average_time_per_file"]
            ),
        }
        return PerformanceComparison(current=current, average=average, improvement=improvement)
