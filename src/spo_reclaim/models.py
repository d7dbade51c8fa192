"""
Data model shared by discovery, transformers, ledger and reporter
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with Graph timestamps."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_size(num_bytes: float) -> str:
    """Human readable byte size (e.g. '12.34 MB')"""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


@dataclass(frozen=True)
class CandidateItem:
    """A remote document selected by discovery"""
    name: str
    path: str
    size: int
    modified: datetime
    item_id: Optional[str] = None
    drive_id: Optional[str] = None
    parent_id: Optional[str] = None

    @property
    def identity(self) -> str:
        """Remote identity (drive + item id), falling back to the path"""
        if self.item_id:
            return f"{self.drive_id or ''}:{self.item_id}"
        return self.path

    def ledger_key(self, mode: str = "path") -> str:
        """
        Key used for ledger membership

        Args:
            mode: 'path' (default) or 'name' for legacy name-only matching
        """
        return self.name if mode == "name" else self.path


@dataclass(frozen=True)
class VersionRecord:
    """One historical version of a CandidateItem"""
    label: str
    created: datetime
    size: int


class SkipReason(str, Enum):
    NO_VERSIONS = "NoVersions"
    SINGLE_VERSION = "SingleVersion"
    NO_OLD_VERSIONS = "NoOldVersions"
    MIN_VERSIONS_RULE_BLOCKED = "MinVersionsRuleBlocked"
    NO_ELIGIBLE_ASSETS = "NoEligibleAssets"
    UNCONVERTIBLE_ASSETS = "UnconvertibleAssets"
    ALREADY_PROCESSED = "AlreadyProcessed"
    ERROR = "Error"


@dataclass(frozen=True)
class Succeeded:
    bytes_saved: int
    units_changed: int
    units_total: int = 0
    size_before: int = 0
    size_after: int = 0
    dry_run: bool = False
    detail: str = ""

    @property
    def label(self) -> str:
        return "dry-run" if self.dry_run else "success"


@dataclass(frozen=True)
class Skipped:
    reason: SkipReason
    detail: str = ""

    @property
    def label(self) -> str:
        return f"skipped:{self.reason.value}"


@dataclass(frozen=True)
class Failed:
    error: str

    @property
    def label(self) -> str:
        return "failed"


TransformOutcome = Union[Succeeded, Skipped, Failed]


@dataclass
class ReportRecord:
    """Per-item entry of the run report"""
    name: str
    path: str
    outcome: TransformOutcome
    size_before: int = 0
    size_after: int = 0
    units_total: int = 0
    units_changed: int = 0
    bytes_saved: int = 0
    duration: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class RunStatistics:
    """Run-level counters owned by the orchestrator"""
    total_candidates: int = 0
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    already_processed: int = 0
    bytes_saved: int = 0
    units_changed: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    def record(self, outcome: TransformOutcome) -> None:
        self.processed += 1
        if isinstance(outcome, Succeeded):
            self.succeeded += 1
            self.bytes_saved += outcome.bytes_saved
            self.units_changed += outcome.units_changed
        elif isinstance(outcome, Skipped):
            self.skipped += 1
            if outcome.reason is SkipReason.ALREADY_PROCESSED:
                self.already_processed += 1
        else:
            self.failed += 1

    @property
    def transformed(self) -> int:
        """Items actually handed to a transformer (ledger skips excluded)"""
        return self.processed - self.already_processed

    def finish(self) -> None:
        if self.finished_at is None:
            self.finished_at = datetime.now()

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()


def estimate_remaining_seconds(elapsed: float, completed: int, remaining: int) -> Optional[float]:
    """
    Linear ETA: elapsed x remaining / completed

    Returns:
        Seconds left, or None before the first item completes
    """
    if completed <= 0:
        return None
    return elapsed * remaining / completed
