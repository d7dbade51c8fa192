"""
Batch orchestration
Discovery -> ledger filter -> transform -> report/ledger, one item at a time
"""

import asyncio
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

from ..errors import ConnectionSetupError
from ..models import (
    CandidateItem,
    Failed,
    RunStatistics,
    SkipReason,
    Skipped,
    TransformOutcome,
    estimate_remaining_seconds,
    format_size,
)
from ..utils.db_manager import ProgressLedger
from ..utils.report import BatchReporter
from .discovery import DiscoveryProvider
from .sharepoint_client import DocumentStore

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def should_record_in_ledger(outcome: TransformOutcome) -> bool:
    """Single-version items are re-evaluated on later runs; everything else is recorded"""
    return not (isinstance(outcome, Skipped) and outcome.reason is SkipReason.SINGLE_VERSION)


def _format_eta(seconds: Optional[float]) -> str:
    if seconds is None:
        return "unknown"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


class BatchOrchestrator:
    """Runs one reclamation batch"""

    def __init__(
        self,
        store: DocumentStore,
        discovery: DiscoveryProvider,
        transformer,
        ledger: ProgressLedger,
        reporter: BatchReporter,
        resume: bool = True,
        dry_run: bool = False,
        ledger_key: str = "path",
        test_mode: bool = False,
        test_mode_limit: int = 5,
        item_pause: float = 1.0,
        report_dir: Optional[Path] = None,
        stats: Optional[RunStatistics] = None,
        sleep: Optional[SleepFunc] = None
    ):
        """
        Args:
            store: Remote document store (connected and closed here)
            discovery: Candidate source
            transformer: ItemTransformer for the selected mode
            ledger: Progress ledger
            reporter: Run report collector
            resume: Skip items already in the ledger
            dry_run: Do not write the ledger (the transformer makes no remote changes)
            ledger_key: 'path' or 'name'
            test_mode: Only process the first test_mode_limit candidates
            item_pause: Seconds between items
            report_dir: Where the report file goes (None: no file)
            stats: Statistics struct to fill (a new one by default)
            sleep: Awaitable sleep (tests inject a recorder)
        """
        self.store = store
        self.discovery = discovery
        self.transformer = transformer
        self.ledger = ledger
        self.reporter = reporter
        self.resume = resume
        self.dry_run = dry_run
        self.ledger_key = ledger_key
        self.test_mode = test_mode
        self.test_mode_limit = test_mode_limit
        self.item_pause = item_pause
        self.report_dir = report_dir
        self.stats = stats or RunStatistics()
        self._sleep = sleep or asyncio.sleep
        self.report_path: Optional[Path] = None

    async def run(self) -> RunStatistics:
        """
        Run the whole batch

        Returns:
            Filled RunStatistics

        Raises:
            ConnectionSetupError: The store could not be connected
        """
        self.stats.started_at = datetime.now()
        connected = False
        try:
            logger.info("=== Connect ===")
            try:
                await self.store.connect()
            except ConnectionSetupError:
                raise
            except Exception as e:
                raise ConnectionSetupError(str(e)) from e
            connected = True

            logger.info("=== Discovery ===")
            candidates = await self.discovery.discover()
            if self.test_mode:
                candidates = candidates[:self.test_mode_limit]
                logger.info(f"Test mode: limited to {len(candidates)} item(s)")

            self.stats.total_candidates = len(candidates)
            if not candidates:
                logger.info("No candidates found")

            if self.resume:
                logger.info(f"Ledger: {len(self.ledger.load())} item(s) already recorded")

            logger.info(f"=== Processing ({self.transformer.name}{', dry run' if self.dry_run else ''}) ===")
            for index, item in enumerate(candidates, 1):
                await self.process_candidate(index, len(candidates), item)
                if index < len(candidates) and self.item_pause:
                    await self._sleep(self.item_pause)

            return self.stats

        finally:
            self.stats.finish()
            # Partial runs (aborted mid-batch) still get their report
            if connected:
                self.write_report()
                self.log_summary()
            try:
                await self.store.close()
            except Exception as e:
                logger.warning(f"Failed to close the SharePoint connection: {e}")

    def write_report(self):
        if self.report_dir is None:
            return
        try:
            self.report_path = self.reporter.write(self.report_dir, self.stats, prefix=self.transformer.name)
        except OSError as e:
            logger.error(f"Failed to write the report to {self.report_dir}: {e}")

    async def process_candidate(
        self,
        index: int,
        total: int,
        item: CandidateItem
    ) -> TransformOutcome:
        """Handle one candidate; never raises for item-level faults"""
        key = item.ledger_key(self.ledger_key)

        if self.resume and self.ledger.contains(key):
            logger.info(f"[{index}/{total}] {item.name}: already processed, skipping")
            outcome = Skipped(reason=SkipReason.ALREADY_PROCESSED)
            self.reporter.record(item, outcome)
            self.stats.record(outcome)
            return outcome

        self.log_progress(index, total, item)

        start_time = datetime.now()
        try:
            outcome = await self.transformer.transform(item)
        except Exception as e:
            logger.error(f"Unexpected error on {item.path}: {e}", exc_info=True)
            outcome = Failed(error=f"unexpected: {e}")
        duration = (datetime.now() - start_time).total_seconds()

        self.reporter.record(item, outcome, duration)
        self.stats.record(outcome)

        if not self.dry_run and should_record_in_ledger(outcome):
            try:
                self.ledger.record(key, outcome.label)
            except (sqlite3.Error, OSError) as e:
                logger.error(f"Ledger write failed for {key}; it will be processed again next run: {e}")

        logger.info(f"[{index}/{total}] {item.name}: {outcome.label} ({duration:.1f}s)")
        return outcome

    def log_progress(self, index: int, total: int, item: CandidateItem):
        done = index - 1
        eta = estimate_remaining_seconds(self.stats.elapsed_seconds, done, total - done)
        logger.info(
            f"[{index}/{total}] {item.path} ({format_size(item.size)}) | "
            f"ok={self.stats.succeeded} skipped={self.stats.skipped} failed={self.stats.failed} "
            f"reclaimed={format_size(self.stats.bytes_saved)} | ETA {_format_eta(eta)}"
        )

    def log_summary(self):
        s = self.stats
        logger.info("=== Run complete ===")
        logger.info(f"Candidates: {s.total_candidates}")
        logger.info(f"Succeeded: {s.succeeded}")
        logger.info(f"Skipped: {s.skipped} (already processed: {s.already_processed})")
        logger.info(f"Failed: {s.failed}")
        logger.info(f"Reclaimed: {format_size(s.bytes_saved)} ({s.units_changed} unit(s) changed)")
        logger.info(f"Elapsed: {s.elapsed_seconds:.1f}s")
        if self.report_path:
            logger.info(f"Report: {self.report_path}")
