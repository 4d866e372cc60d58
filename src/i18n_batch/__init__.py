"""
i18n-batch

Cached, priority-ordered, concurrency-controlled batch processing of source
files through an expensive external translator.

Components:
- FileScanner: finds files with translatable literals and prioritizes them
- CacheStore: per-file fingerprints, string index and TTL response cache
- ParallelProcessor: bounded-concurrency scheduler with per-task timeouts
- ProgressMonitor: task lifecycle, ETA and session performance history
- CacheManager: statistics, cleanup, verification, export/import

The translator itself is injected: any async callable
``(path, content) -> TranslationOutcome | dict``.
"""

__version__ = "1.0.0"

from .cache_manager import CacheManager
from .cache_store import CacheStore
from .common_types import (
    CacheCorruptionError,
    CandidateFile,
    ConfigurationError,
    I18nBatchError,
    OutcomeKind,
    Priority,
    ScanError,
    TaskState,
    TranslatedString,
    TranslationOutcome,
    TranslatorError,
    TranslatorTimeoutError,
)
from .config import BatchConfig, get_config
from .file_scanner import FileScanner, generate_scan_report, group_files_for_batching
from .pipeline import BatchPipeline, PipelineResult, run_batch_pipeline
from .progress_callbacks import CancellationToken, LoggingTaskListener, TaskEvent, TaskListener
from .progress_monitor import PerformanceMetrics, ProgressMonitor
from .scheduler import (
    BatchResult,
    InProcessStrategy,
    ParallelProcessor,
    ProcessIsolationStrategy,
    SchedulerConfig,
    ThreadIsolationStrategy,
)

__all__ = [
    "BatchConfig",
    "get_config",
    "FileScanner",
    "generate_scan_report",
    "group_files_for_batching",
    "CacheStore",
    "CacheManager",
    "ParallelProcessor",
    "SchedulerConfig",
    "InProcessStrategy",
    "ThreadIsolationStrategy",
    "ProcessIsolationStrategy",
    "BatchResult",
    "ProgressMonitor",
    "PerformanceMetrics",
    "TaskEvent",
    "TaskListener",
    "LoggingTaskListener",
    "CancellationToken",
    "BatchPipeline",
    "PipelineResult",
    "run_batch_pipeline",
    "CandidateFile",
    "Priority",
    "TaskState",
    "OutcomeKind",
    "TranslatedString",
    "TranslationOutcome",
    "I18nBatchError",
    "ScanError",
    "CacheCorruptionError",
    "TranslatorError",
    "TranslatorTimeoutError",
    "ConfigurationError",
]
