"""
Batch translation pipeline

Wires the scanner, cache store, scheduler and progress monitor into one run:

1. Validate configuration
2. Scan the source tree and report
3. Schedule files needing processing, highest priority first
4. Close the monitoring session and return everything collected
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .cache_store import CacheStore
from .common_types import ConfigurationError, Translator
from .config import BatchConfig
from .file_scanner import FileScanner, ScanReport, ScanResult, generate_scan_report
from .progress_callbacks import CancellationToken, LoggingTaskListener, TaskListener
from .progress_monitor import PerformanceMetrics, ProgressMonitor
from .scheduler import BatchResult, BatchSummary, ParallelProcessor, SchedulerConfig

logger = logging.getLogger(__name__)

# Type alias for message handler
MessageHandler = Callable[[str], None]


@dataclass
class PipelineResult:
    """Everything one pipeline run produced."""
    scan: ScanResult
    report: ScanReport
    batch: BatchResult | None = None
    metrics: PerformanceMetrics | None = None

    @property
    def dry_run(self) -> bool:
        return self.batch is None


class BatchPipeline:
    """
    One scan-and-translate run over a source tree.

    The CacheStore is created from the configuration unless one is passed
    in; either way the same handle is shared by every stage.
    """

    def __init__(
        self,
        config: BatchConfig | None,
        translator: Translator | None,
        cache: CacheStore | None = None,
        listeners: list[TaskListener] | None = None,
        cancel_token: CancellationToken | None = None,
    ):
        self.config = config or BatchConfig()
        self.config.ensure_valid()
        if translator is None:
            raise ConfigurationError("A translator is required")

        self.translator = translator
        self.cache = cache or CacheStore(
            self.config.cache_dir,
            default_ttl=self.config.response_ttl_seconds,
            max_entries=self.config.response_max_entries,
            track_revisions=self.config.track_revisions,
        )
        self.listeners = list(listeners or [])
        self.cancel_token = cancel_token
        self.scanner = FileScanner(self.config, self.cache)

    async def run(
        self,
        root: str | Path | None = None,
        force: bool = False,
        dry_run: bool = False,
        progress_updates: bool = False,
        progress_callback: MessageHandler | None = None,
    ) -> PipelineResult:
        """
        Scan and process a source tree.

        Args:
            root: Directory to scan (default: config.src_dir)
            force: Ignore fresh fingerprints and process every candidate
            dry_run: Stop after the scan report
            progress_updates: Emit periodic progress snapshots
            progress_callback: Optional callback for stage messages

        Returns:
            PipelineResult with scan, report, batch result and metrics
        """
        def notify(message: str) -> None:
            logger.info(f"[PIPELINE] {message}")
            if progress_callback:
                progress_callback(message)

        scan = await self.scanner.scan(root, skip_cache=force)
        report = generate_scan_report(scan.candidates)
        notify(
            f"Scanned {scan.files_examined} files: {report.total_files} candidates, "
            f"{report.files_needing_translation} need translation "
            f"({report.total_strings} strings, est. {report.estimated_time})"
        )

        if dry_run:
            return PipelineResult(scan=scan, report=report)

        to_process = scan.candidates if force else scan.needing_processing
        if not to_process:
            notify("Nothing to translate")
            return PipelineResult(
                scan=scan,
                report=report,
                batch=BatchResult(results=[], summary=BatchSummary()),
            )

        monitor = ProgressMonitor(
            self.config.cache_dir,
            total_files=len({c.path for c in to_process}),
            history_size=self.config.metrics_history_size,
        )
        processor = ParallelProcessor(
            SchedulerConfig.from_batch_config(self.config, force=force),
            cache=self.cache,
            translator=self.translator,
            listeners=[monitor, LoggingTaskListener(), *self.listeners],
            cancel_token=self.cancel_token,
        )

        if progress_updates:
            monitor.start_progress_updates(self.config.progress_interval_seconds)
        try:
            batch = await processor.run(to_process)
        finally:
            metrics = monitor.complete_session()

        notify(
            f"Done: {batch.summary.processed} processed, {batch.summary.skipped} skipped, "
            f"{batch.summary.failed} failed"
        )
        return PipelineResult(scan=scan, report=report, batch=batch, metrics=metrics)

    def run_sync(self, *args, **kwargs) -> PipelineResult:
        """Blocking wrapper around run()."""
        return asyncio.run(self.run(*args, **kwargs))


# Standalone function for direct use
async def run_batch_pipeline(
    translator: Translator,
    root: str | Path | None = None,
    config: BatchConfig | None = None,
    force: bool = False,
    dry_run: bool = False,
    progress_callback: MessageHandler | None = None,
) -> PipelineResult:
    """
    Run the batch pipeline over a source tree.

    Example:
        async def translate(path, content):
            ...
            return {"strings": [...]}

        result = await run_batch_pipeline(translate, "./src")
        print(result.batch.summary.to_dict())
    """
    pipeline = BatchPipeline(config, translator)
    return await pipeline.run(
        root,
        force=force,
        dry_run=dry_run,
        progress_callback=progress_callback,
    )
