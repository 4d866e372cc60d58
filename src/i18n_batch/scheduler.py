"""
Parallel Processor for batch translation

Runs the translator over prioritized candidate files under a concurrency
limit, with per-task timeouts and isolated failures.

Features:
- Strict HIGH -> MEDIUM -> LOW buckets, each a barrier
- asyncio.Semaphore bounding in-flight tasks
- Cache short-circuits: fresh fingerprint, response cache, string index
- Per-task timeouts with asyncio.wait_for
- Pluggable execution strategy (in-process, daemon-thread or process workers)
- Lifecycle events for progress listeners
- Cooperative cancellation
"""

import asyncio
import itertools
import logging
import multiprocessing
import re
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .cache_store import CacheStore
from .common_types import (
    PRIORITY_ORDER,
    CandidateFile,
    ConfigurationError,
    I18nBatchError,
    OutcomeKind,
    Priority,
    TaskState,
    TranslatedString,
    TranslationOutcome,
    Translator,
    TranslatorError,
    TranslatorTimeoutError,
    get_optimal_workers,
)
from .config import DEFAULT_QUALIFYING_PATTERN, ISOLATION_MODES, BatchConfig
from .file_scanner import decode_source, find_qualifying_literals, read_source_bytes
from .profiling import profile_latency
from .progress_callbacks import (
    CancellationToken,
    TaskEvent,
    TaskEventDispatcher,
    TaskEventType,
    TaskListener,
)
from .utils import sha256_bytes

logger = logging.getLogger(__name__)


SOURCE_TRANSLATOR = "translator"
SOURCE_RESPONSE_CACHE = "response-cache"
SOURCE_STRING_CACHE = "string-cache"


class TaskCancelledError(I18nBatchError):
    """A task was not run because the batch was cancelled."""


@dataclass
class SchedulerConfig:
    """Scheduling limits for one run."""
    max_concurrency: int = 3
    per_task_timeout: float = 300.0
    isolation_mode: str = "in_process"
    max_workers: int = field(default_factory=get_optimal_workers)
    run_deadline: float | None = None  # Seconds; thread mode defaults to 2x per_task_timeout
    force: bool = False  # Ignore fresh fingerprints
    qualifying_pattern: str = DEFAULT_QUALIFYING_PATTERN

    @classmethod
    def from_batch_config(cls, config: BatchConfig, force: bool = False) -> "SchedulerConfig":
        return cls(
            max_concurrency=config.max_concurrency,
            per_task_timeout=config.task_timeout_seconds,
            isolation_mode=config.isolation_mode,
            max_workers=config.max_workers,
            run_deadline=config.effective_run_deadline,
            force=force,
            qualifying_pattern=config.qualifying_pattern,
        )

    def validate(self) -> list[str]:
        errors = []
        if self.max_concurrency < 1:
            errors.append("max_concurrency must be at least 1")
        if self.per_task_timeout <= 0:
            errors.append("per_task_timeout must be positive")
        if self.isolation_mode not in ISOLATION_MODES:
            errors.append(f"unknown isolation_mode {self.isolation_mode!r}")
        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.run_deadline is not None and self.run_deadline <= 0:
            errors.append("run_deadline must be positive")
        return errors


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class TaskResult:
    """Terminal result of one scheduled file."""
    task_id: str
    path: str
    priority: Priority
    kind: OutcomeKind
    started_at: float
    finished_at: float
    dispatch_index: int = -1
    outcome: TranslationOutcome | None = None
    error: str | None = None
    source: str | None = None

    @property
    def state(self) -> TaskState:
        return self.kind.task_state

    @property
    def success(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.CACHE_SKIP)

    @property
    def duration(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "path": self.path,
            "priority": self.priority.value,
            "kind": self.kind.value,
            "state": self.state.value,
            "dispatch_index": self.dispatch_index,
            "duration": self.duration,
            "error": self.error,
            "source": self.source,
            "strings": self.outcome.string_count if self.outcome else 0,
        }


@dataclass
class BatchSummary:
    total_files: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    total_time: float = 0.0
    average_time: float = 0.0
    failures: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: list[TaskResult], total_time: float) -> "BatchSummary":
        processed = sum(1 for r in results if r.kind == OutcomeKind.SUCCESS)
        skipped = sum(1 for r in results if r.kind == OutcomeKind.CACHE_SKIP)
        failures = [
            {"path": r.path, "kind": r.kind.value, "error": r.error or ""}
            for r in results
            if not r.success
        ]
        return cls(
            total_files=len(results),
            processed=processed,
            failed=len(failures),
            skipped=skipped,
            total_time=total_time,
            average_time=total_time / processed if processed else 0.0,
            failures=failures,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_files": self.total_files,
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_time": self.total_time,
            "average_time": self.average_time,
            "failures": self.failures,
        }


@dataclass
class BatchResult:
    results: list[TaskResult]
    summary: BatchSummary

    def by_path(self, path: str) -> TaskResult | None:
        for result in self.results:
            if result.path == path:
                return result
        return None


# =============================================================================
# EXECUTION STRATEGIES
# =============================================================================


class ExecutionStrategy:
    """How a translator call is executed. Timeouts are applied by the caller."""

    name = "base"

    def start(self) -> None:
        """Called once before the first task of a run."""

    def remaining_budget(self) -> float | None:
        """Seconds left before the run deadline, or None when unbounded."""
        return None

    async def call(
        self,
        translator: Translator,
        path: str,
        content: str,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        raise NotImplementedError

    def shutdown(self) -> None:
        """Called once after the last task of a run."""


class InProcessStrategy(ExecutionStrategy):
    """Awaits the translator on the running event loop."""

    name = "in_process"

    async def call(self, translator, path, content, cancel_token=None):
        return await translator(path, content)


def _run_translator_in_worker(
    translator: Translator,
    path: str,
    content: str,
    cancel_token: CancellationToken | None,
) -> Any:
    """Worker thread body: run the translator on a private event loop."""
    if cancel_token is not None and cancel_token.cancelled:
        raise TaskCancelledError(f"Cancelled before start: {path}")

    async def _call():
        return await translator(path, content)

    return asyncio.run(_call())


def _settle(future: asyncio.Future, result: Any, error: Exception | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


class ThreadIsolationStrategy(ExecutionStrategy):
    """
    Runs each translator call on its own daemon thread with a private event loop.

    A wall-clock deadline covers the whole run. A call that times out
    releases its worker slot at once; its thread is abandoned and, being a
    daemon, never blocks interpreter exit. Threads cannot be killed: use
    ProcessIsolationStrategy when hung calls must be terminated.
    """

    name = "thread"

    def __init__(self, max_workers: int | None = None, run_deadline: float | None = None):
        self.max_workers = max_workers or get_optimal_workers()
        self.run_deadline = run_deadline
        self._slots: asyncio.Semaphore | None = None
        self._deadline_at: float | None = None
        self._threads: set[threading.Thread] = set()
        self._thread_ids = itertools.count()

    def start(self) -> None:
        self._slots = asyncio.Semaphore(self.max_workers)
        if self.run_deadline is not None:
            self._deadline_at = time.monotonic() + self.run_deadline

    def remaining_budget(self) -> float | None:
        if self._deadline_at is None:
            return None
        return self._deadline_at - time.monotonic()

    async def call(self, translator, path, content, cancel_token=None):
        if self._slots is None:
            raise RuntimeError("ThreadIsolationStrategy.start() was not called")
        async with self._slots:
            loop = asyncio.get_running_loop()
            future = loop.create_future()

            def _worker() -> None:
                try:
                    result, error = _run_translator_in_worker(translator, path, content, cancel_token), None
                except Exception as e:
                    result, error = None, e
                try:
                    loop.call_soon_threadsafe(_settle, future, result, error)
                except RuntimeError:
                    # Event loop closed while the call was abandoned
                    logger.debug(f"[SCHED] Dropping late result for {path}")
                finally:
                    self._threads.discard(threading.current_thread())

            thread = threading.Thread(
                target=_worker,
                name=f"i18n-worker-{next(self._thread_ids)}",
                daemon=True,
            )
            self._threads.add(thread)
            thread.start()
            return await future

    def shutdown(self) -> None:
        abandoned = [t for t in self._threads if t.is_alive()]
        if abandoned:
            logger.warning(f"[SCHED] Abandoning {len(abandoned)} running worker threads")
        self._slots = None
        self._deadline_at = None


# Outcome tags sent back from worker processes
_PROC_OK = "ok"
_PROC_TRANSLATOR_ERROR = "translator-error"
_PROC_ERROR = "error"


def _run_translator_in_process(translator: Translator, path: str, content: str, conn) -> None:
    """Worker process body. Sends one (tag, value) pair through conn."""
    try:
        result = _run_translator_in_worker(translator, path, content, None)
        message = (_PROC_OK, TranslationOutcome.coerce(result).to_dict())
    except TranslatorError as e:
        message = (_PROC_TRANSLATOR_ERROR, str(e))
    except Exception as e:
        message = (_PROC_ERROR, f"{type(e).__name__}: {e}")
    try:
        conn.send(message)
    finally:
        conn.close()


def default_start_method() -> str:
    """fork where available so unpicklable translators still work, else spawn."""
    return "fork" if "fork" in multiprocessing.get_all_start_methods() else "spawn"


class ProcessIsolationStrategy(ExecutionStrategy):
    """
    Runs each translator call in a separate worker process.

    A call that times out, and every process still running at the run
    deadline, is terminated. With the spawn start method the translator
    must be picklable.
    """

    name = "process"

    TERMINATE_GRACE_SECONDS = 1.0

    def __init__(
        self,
        max_workers: int | None = None,
        run_deadline: float | None = None,
        start_method: str | None = None,
    ):
        self.max_workers = max_workers or get_optimal_workers()
        self.run_deadline = run_deadline
        self._ctx = multiprocessing.get_context(start_method or default_start_method())
        self._slots: asyncio.Semaphore | None = None
        self._deadline_at: float | None = None
        self._processes: set = set()

    def start(self) -> None:
        self._slots = asyncio.Semaphore(self.max_workers)
        if self.run_deadline is not None:
            self._deadline_at = time.monotonic() + self.run_deadline

    def remaining_budget(self) -> float | None:
        if self._deadline_at is None:
            return None
        return self._deadline_at - time.monotonic()

    @property
    def live_processes(self) -> int:
        return sum(1 for p in self._processes if p.is_alive())

    def _terminate(self, process) -> None:
        if process.is_alive():
            process.terminate()
            process.join(self.TERMINATE_GRACE_SECONDS)
            if process.is_alive():
                process.kill()
                process.join()
        self._processes.discard(process)

    async def call(self, translator, path, content, cancel_token=None):
        if self._slots is None:
            raise RuntimeError("ProcessIsolationStrategy.start() was not called")
        if cancel_token is not None and cancel_token.cancelled:
            raise TaskCancelledError(f"Cancelled before start: {path}")

        async with self._slots:
            reader, writer = self._ctx.Pipe(duplex=False)
            process = self._ctx.Process(
                target=_run_translator_in_process,
                args=(translator, path, content, writer),
                name=f"i18n-worker-{Path(path).name}",
                daemon=True,
            )
            process.start()
            writer.close()
            self._processes.add(process)

            loop = asyncio.get_running_loop()
            try:
                tag, value = await loop.run_in_executor(None, reader.recv)
            except EOFError:
                process.join(self.TERMINATE_GRACE_SECONDS)
                reader.close()
                raise TranslatorError(
                    f"Worker process for {path} exited without a result (exit code {process.exitcode})"
                )
            finally:
                # Unblocks a pending recv with EOFError; the reader is then left to GC
                self._terminate(process)
            reader.close()

        if tag == _PROC_OK:
            return value
        if tag == _PROC_TRANSLATOR_ERROR:
            raise TranslatorError(value)
        raise RuntimeError(value)

    def shutdown(self) -> None:
        running = [p for p in self._processes if p.is_alive()]
        if running:
            logger.warning(f"[SCHED] Terminating {len(running)} worker processes at run end")
        for process in list(self._processes):
            self._terminate(process)
        self._slots = None
        self._deadline_at = None


def create_strategy(config: SchedulerConfig) -> ExecutionStrategy:
    if config.isolation_mode in ("thread", "process"):
        deadline = config.run_deadline
        if deadline is None:
            deadline = config.per_task_timeout * 2
        if config.isolation_mode == "process":
            return ProcessIsolationStrategy(config.max_workers, deadline)
        return ThreadIsolationStrategy(config.max_workers, deadline)
    return InProcessStrategy()


# =============================================================================
# PROCESSOR
# =============================================================================


@dataclass
class _Task:
    task_id: str
    candidate: CandidateFile


class ParallelProcessor:
    """
    Concurrency-controlled batch runner.

    Each candidate becomes one task; tasks run bucket by bucket in priority
    order, at most max_concurrency at a time. A failing task never cancels
    its siblings and never raises out of run().
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        cache: CacheStore | None = None,
        translator: Translator | None = None,
        listeners: Optional[list[TaskListener]] = None,
        cancel_token: CancellationToken | None = None,
        strategy: ExecutionStrategy | None = None,
    ):
        self.config = config or SchedulerConfig()
        errors = self.config.validate()
        if errors:
            raise ConfigurationError("; ".join(errors))

        self.cache = cache
        self.translator = translator
        self.events = TaskEventDispatcher(listeners)
        self.cancel_token = cancel_token
        self.strategy = strategy or create_strategy(self.config)
        self._qualifying = re.compile(self.config.qualifying_pattern)
        self._dispatch_counter = itertools.count()

    def add_listener(self, listener: TaskListener) -> None:
        self.events.add(listener)

    @staticmethod
    def _build_tasks(candidates: list[CandidateFile]) -> list[_Task]:
        """One task per path, first occurrence wins."""
        seen: set[str] = set()
        tasks: list[_Task] = []
        for candidate in candidates:
            if candidate.path in seen:
                logger.debug(f"[SCHED] Dropping duplicate candidate {candidate.path}")
                continue
            seen.add(candidate.path)
            tasks.append(_Task(f"{len(tasks):04d}-{Path(candidate.path).name}", candidate))
        return tasks

    @profile_latency("schedule")
    async def run(
        self,
        candidates: list[CandidateFile],
        translator: Translator | None = None,
    ) -> BatchResult:
        """
        Process candidates and return per-task results with a summary.

        Raises:
            ConfigurationError: if no translator is available
        """
        translator = translator or self.translator
        if translator is None:
            raise ConfigurationError("A translator is required")

        tasks = self._build_tasks(candidates)
        buckets: dict[Priority, list[_Task]] = {p: [] for p in PRIORITY_ORDER}
        for task in tasks:
            buckets[task.candidate.priority].append(task)

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._dispatch_counter = itertools.count()
        results: list[TaskResult] = []
        start = time.perf_counter()

        logger.info(
            f"[SCHED] Starting {len(tasks)} tasks "
            f"(concurrency {self.config.max_concurrency}, mode {self.strategy.name})"
        )

        self.strategy.start()
        try:
            with self.cache.deferred_writes() if self.cache else nullcontext():
                for priority in PRIORITY_ORDER:
                    bucket = buckets[priority]
                    if not bucket:
                        continue
                    logger.info(f"[SCHED] Processing {len(bucket)} {priority.value} priority files")
                    outcomes = await asyncio.gather(
                        *(self._run_task(task, translator, semaphore) for task in bucket),
                        return_exceptions=True,
                    )
                    for task, outcome in zip(bucket, outcomes):
                        if isinstance(outcome, BaseException):
                            outcome = self._orphan_result(task, outcome)
                        results.append(outcome)
        finally:
            self.strategy.shutdown()

        summary = BatchSummary.from_results(results, time.perf_counter() - start)
        logger.info(
            f"[SCHED] Done: {summary.processed} processed, {summary.skipped} skipped, "
            f"{summary.failed} failed in {summary.total_time:.1f}s"
        )
        return BatchResult(results=results, summary=summary)

    def run_sync(self, candidates: list[CandidateFile], translator: Translator | None = None) -> BatchResult:
        """Blocking wrapper around run()."""
        return asyncio.run(self.run(candidates, translator))

    async def process_with_intelligent_batching(
        self,
        candidates: list[CandidateFile],
        translator: Translator | None = None,
    ) -> BatchResult:
        """
        Two-phase run: fresh candidates are skipped up front, the rest scheduled.
        """
        start = time.perf_counter()
        skipped: list[TaskResult] = []
        pending: list[CandidateFile] = []

        for task in self._build_tasks(candidates):
            path = task.candidate.path
            if self.cache and not self.config.force and not self.cache.needs_translation(path):
                skipped.append(self._skip_result(task))
            else:
                pending.append(task.candidate)

        logger.info(f"[SCHED] {len(skipped)} files cached, {len(pending)} to process")

        batch = await self.run(pending, translator) if pending else BatchResult([], BatchSummary())
        results = skipped + batch.results
        return BatchResult(
            results=results,
            summary=BatchSummary.from_results(results, time.perf_counter() - start),
        )

    # -------------------------------------------------------------------------
    # Task execution
    # -------------------------------------------------------------------------

    async def _run_task(
        self,
        task: _Task,
        translator: Translator,
        semaphore: asyncio.Semaphore,
    ) -> TaskResult:
        candidate = task.candidate
        async with semaphore:
            dispatch_index = next(self._dispatch_counter)
            started_at = time.time()
            self.events.emit(TaskEvent(
                type=TaskEventType.STARTED,
                task_id=task.task_id,
                path=candidate.path,
                priority=candidate.priority,
                timestamp=started_at,
                dispatch_index=dispatch_index,
                total_strings=candidate.match_count,
            ))

            kind, outcome, error, source = await self._execute(candidate, translator)

            result = TaskResult(
                task_id=task.task_id,
                path=candidate.path,
                priority=candidate.priority,
                kind=kind,
                started_at=started_at,
                finished_at=time.time(),
                dispatch_index=dispatch_index,
                outcome=outcome,
                error=error,
                source=source,
            )
            self._emit_finished(result)
            return result

    async def _execute(
        self,
        candidate: CandidateFile,
        translator: Translator,
    ) -> tuple[OutcomeKind, TranslationOutcome | None, str | None, str | None]:
        path = candidate.path

        if self.cancel_token is not None and self.cancel_token.cancelled:
            return OutcomeKind.CANCELLED, None, self.cancel_token.reason, None

        try:
            raw = await read_source_bytes(path)
        except OSError as e:
            return OutcomeKind.UNEXPECTED, None, f"Cannot read file: {e}", None
        content = decode_source(raw)
        if content is None:
            return OutcomeKind.UNEXPECTED, None, "Undecodable file content", None

        if self.cache is not None:
            short_circuit = self._check_caches(path, raw, content)
            if short_circuit is not None:
                return short_circuit

        budget = self.strategy.remaining_budget()
        if budget is not None and budget <= 0:
            return OutcomeKind.TIMEOUT, None, "Run deadline exceeded before dispatch", None
        timeout = self.config.per_task_timeout if budget is None else min(self.config.per_task_timeout, budget)

        try:
            raw_outcome = await asyncio.wait_for(
                self.strategy.call(translator, path, content, self.cancel_token),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, TranslatorTimeoutError):
            return OutcomeKind.TIMEOUT, None, str(TranslatorTimeoutError(path, timeout)), None
        except TaskCancelledError as e:
            return OutcomeKind.CANCELLED, None, str(e), None
        except TranslatorError as e:
            return OutcomeKind.TRANSLATOR_ERROR, None, str(e), None
        except Exception as e:
            logger.exception(f"[SCHED] Unexpected error processing {path}")
            return OutcomeKind.UNEXPECTED, None, f"{type(e).__name__}: {e}", None

        try:
            outcome = TranslationOutcome.coerce(raw_outcome)
        except TypeError as e:
            return OutcomeKind.UNEXPECTED, None, str(e), None

        if self.cache is not None:
            self.cache.set(self.cache.response_key(path, content), outcome.to_dict())
            self.cache.save(path, outcome)

        return OutcomeKind.SUCCESS, outcome, None, SOURCE_TRANSLATOR

    def _check_caches(
        self,
        path: str,
        raw: bytes,
        content: str,
    ) -> tuple[OutcomeKind, TranslationOutcome | None, str | None, str | None] | None:
        """Cache-skip or cached success for a file, or None to call the translator."""
        if not self.config.force and not self.cache.needs_translation(path, sha256_bytes(raw)):
            return OutcomeKind.CACHE_SKIP, None, None, None

        cached = self.cache.get(self.cache.response_key(path, content))
        if cached is not None:
            try:
                outcome = TranslationOutcome.coerce(cached)
            except TypeError:
                logger.warning(f"[SCHED] Ignoring unusable cached response for {path}")
            else:
                self.cache.save(path, outcome)
                return OutcomeKind.SUCCESS, outcome, None, SOURCE_RESPONSE_CACHE

        literals = find_qualifying_literals(content, self._qualifying)
        if literals:
            hits = self.cache.batch_check_translations(literals)
            if len(hits) == len(literals):
                outcome = TranslationOutcome(
                    strings=[
                        TranslatedString(e.original, e.key, e.translation)
                        for e in (hits[text] for text in literals)
                    ],
                    data={"source": SOURCE_STRING_CACHE},
                )
                self.cache.save(path, outcome)
                return OutcomeKind.SUCCESS, outcome, None, SOURCE_STRING_CACHE

        return None

    def _skip_result(self, task: _Task) -> TaskResult:
        now = time.time()
        result = TaskResult(
            task_id=task.task_id,
            path=task.candidate.path,
            priority=task.candidate.priority,
            kind=OutcomeKind.CACHE_SKIP,
            started_at=now,
            finished_at=now,
        )
        self.events.emit(TaskEvent(
            type=TaskEventType.STARTED,
            task_id=task.task_id,
            path=task.candidate.path,
            priority=task.candidate.priority,
            timestamp=now,
            total_strings=task.candidate.match_count,
        ))
        self._emit_finished(result)
        return result

    def _orphan_result(self, task: _Task, exc: BaseException) -> TaskResult:
        """Result for a task whose coroutine escaped with an exception."""
        now = time.time()
        logger.error(f"[SCHED] Task for {task.candidate.path} escaped: {exc!r}")
        result = TaskResult(
            task_id=task.task_id,
            path=task.candidate.path,
            priority=task.candidate.priority,
            kind=OutcomeKind.UNEXPECTED,
            started_at=now,
            finished_at=now,
            error=f"{type(exc).__name__}: {exc}",
        )
        self._emit_finished(result)
        return result

    def _emit_finished(self, result: TaskResult) -> None:
        self.events.emit(TaskEvent(
            type=TaskEventType.FINISHED,
            task_id=result.task_id,
            path=result.path,
            priority=result.priority,
            timestamp=result.finished_at,
            dispatch_index=result.dispatch_index,
            outcome=result.kind,
            translated_strings=result.outcome.string_count if result.outcome else 0,
            error=result.error,
            source=result.source,
        ))
