"""
Run report: per-item detail, top savings, skip histogram and totals
"""

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..models import (
    CandidateItem,
    Failed,
    ReportRecord,
    RunStatistics,
    SkipReason,
    Skipped,
    Succeeded,
    TransformOutcome,
    format_size,
)

logger = logging.getLogger(__name__)


class BatchReporter:
    """Collects ReportRecords for one run"""

    def __init__(self, top_n: int = 10, title: str = "SharePoint storage reclamation"):
        self.top_n = top_n
        self.title = title
        self._records: List[ReportRecord] = []

    @property
    def records(self) -> List[ReportRecord]:
        return list(self._records)

    def record(self, item: CandidateItem, outcome: TransformOutcome, duration: float = 0.0) -> ReportRecord:
        """
        Add the outcome of one candidate

        Args:
            item: Candidate that was handled
            outcome: Transformer result
            duration: Seconds spent on the item

        Returns:
            The stored record
        """
        if isinstance(outcome, Succeeded):
            record = ReportRecord(
                name=item.name,
                path=item.path,
                outcome=outcome,
                size_before=outcome.size_before or item.size,
                size_after=outcome.size_after,
                units_total=outcome.units_total,
                units_changed=outcome.units_changed,
                bytes_saved=outcome.bytes_saved,
                duration=duration,
            )
        else:
            record = ReportRecord(
                name=item.name,
                path=item.path,
                outcome=outcome,
                size_before=item.size,
                size_after=item.size,
                duration=duration,
            )
        self._records.append(record)
        return record

    def totals(self) -> Dict:
        succeeded = [r for r in self._records if isinstance(r.outcome, Succeeded)]
        return {
            'records': len(self._records),
            'succeeded': len(succeeded),
            'skipped': sum(1 for r in self._records if isinstance(r.outcome, Skipped)),
            'failed': sum(1 for r in self._records if isinstance(r.outcome, Failed)),
            'bytes_before': sum(r.size_before for r in succeeded),
            'bytes_after': sum(r.size_after for r in succeeded),
            'bytes_saved': sum(r.bytes_saved for r in succeeded),
            'units_changed': sum(r.units_changed for r in succeeded),
        }

    def top_by_impact(self, n: Optional[int] = None) -> List[ReportRecord]:
        """Successful records with the largest savings first"""
        n = self.top_n if n is None else n
        succeeded = [r for r in self._records if isinstance(r.outcome, Succeeded) and r.bytes_saved > 0]
        return sorted(succeeded, key=lambda r: r.bytes_saved, reverse=True)[:n]

    def skip_histogram(self) -> Counter:
        """SkipReason -> count (failures count as SkipReason.ERROR)"""
        histogram: Counter = Counter()
        for r in self._records:
            if isinstance(r.outcome, Skipped):
                histogram[r.outcome.reason] += 1
            elif isinstance(r.outcome, Failed):
                histogram[SkipReason.ERROR] += 1
        return histogram

    def render(self, stats: Optional[RunStatistics] = None) -> str:
        """Plain-text report"""
        totals = self.totals()
        lines = [
            "=" * 70,
            self.title,
            f"Generated: {datetime.now().isoformat(timespec='seconds')}",
            "=" * 70,
            "",
            "Totals:",
            f"  Items recorded: {totals['records']}",
            f"  Succeeded: {totals['succeeded']}",
            f"  Skipped: {totals['skipped']}",
            f"  Failed: {totals['failed']}",
            f"  Size before: {format_size(totals['bytes_before'])}",
            f"  Size after: {format_size(totals['bytes_after'])}",
            f"  Space reclaimed: {format_size(totals['bytes_saved'])}",
            f"  Units changed: {totals['units_changed']}",
        ]

        if stats is not None:
            elapsed = stats.elapsed_seconds
            per_minute = (stats.transformed / elapsed * 60) if elapsed > 0 else 0.0
            lines += [
                f"  Elapsed: {elapsed:.1f}s",
                f"  Throughput: {per_minute:.2f} items/min",
            ]

        lines += ["", f"Top {self.top_n} by space reclaimed:"]
        top = self.top_by_impact()
        if not top:
            lines.append("  (none)")
        for i, r in enumerate(top, 1):
            lines.append(f"  {i}. {r.path} - {format_size(r.bytes_saved)} ({r.units_changed} changed)")

        lines += ["", "Skip reasons:"]
        histogram = self.skip_histogram()
        if not histogram:
            lines.append("  (none)")
        for reason, count in sorted(histogram.items(), key=lambda kv: (-kv[1], kv[0].value)):
            lines.append(f"  {reason.value}: {count}")

        lines += ["", "Details:"]
        if not self._records:
            lines.append("  (no items processed)")
        for r in self._records:
            lines.append(
                f"  {r.timestamp.isoformat(timespec='seconds')} {r.outcome.label:<32} {r.path} "
                f"before={format_size(r.size_before)} after={format_size(r.size_after)} "
                f"units={r.units_changed}/{r.units_total} ({r.duration:.1f}s)"
            )
            if isinstance(r.outcome, Failed):
                lines.append(f"      error: {r.outcome.error}")

        return "\n".join(lines) + "\n"

    def write(self, report_dir: Path, stats: Optional[RunStatistics] = None, prefix: str = "reclaim") -> Path:
        """
        Write the report to a new timestamped file

        Returns:
            Path of the written report
        """
        report_dir = Path(report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / f"{prefix}_report_{datetime.now():%Y%m%d_%H%M%S}.txt"
        report_path.write_text(self.render(stats), encoding='utf-8')
        logger.info(f"Report written: {report_path}")
        return report_path
