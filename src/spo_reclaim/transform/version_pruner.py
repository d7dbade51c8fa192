"""
Old version pruning
Deletes versions older than the cutoff while always keeping the newest N
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..errors import PermanentRemoteError
from ..models import (
    CandidateItem,
    Failed,
    SkipReason,
    Skipped,
    Succeeded,
    TransformOutcome,
    VersionRecord,
    ensure_utc,
    format_size,
)
from ..sharepoint_sync.sharepoint_client import DocumentStore
from ..utils.retry import Retrier
from .base import ItemTransformer

logger = logging.getLogger(__name__)


@dataclass
class VersionPlan:
    """Deletion decision for one item"""
    versions: List[VersionRecord]
    retained: List[VersionRecord] = field(default_factory=list)
    older: List[VersionRecord] = field(default_factory=list)
    to_delete: List[VersionRecord] = field(default_factory=list)
    skip_reason: Optional[SkipReason] = None


def select_versions_to_delete(
    versions: List[VersionRecord],
    cutoff: datetime,
    keep_min_versions: int
) -> VersionPlan:
    """
    Decide which versions can be deleted

    Args:
        versions: All versions of the item
        cutoff: Versions created at or after this instant are never deleted
        keep_min_versions: Newest versions that are always retained

    Returns:
        VersionPlan with to_delete sorted oldest first, or a skip_reason
    """
    plan = VersionPlan(versions=list(versions))

    if not versions:
        plan.skip_reason = SkipReason.NO_VERSIONS
        return plan
    if len(versions) == 1:
        plan.skip_reason = SkipReason.SINGLE_VERSION
        return plan

    cutoff = ensure_utc(cutoff)
    plan.older = [v for v in versions if ensure_utc(v.created) < cutoff]
    if not plan.older:
        plan.skip_reason = SkipReason.NO_OLD_VERSIONS
        return plan

    newest_first = sorted(versions, key=lambda v: ensure_utc(v.created), reverse=True)
    plan.retained = newest_first[:max(keep_min_versions, 0)]
    retained_labels = {v.label for v in plan.retained}

    candidates = [v for v in plan.older if v.label not in retained_labels]
    if not candidates:
        plan.skip_reason = SkipReason.MIN_VERSIONS_RULE_BLOCKED
        return plan

    plan.to_delete = sorted(candidates, key=lambda v: ensure_utc(v.created))
    return plan


class VersionPruner(ItemTransformer):
    """Version cleanup for one document"""

    name = "versions"

    def __init__(
        self,
        store: DocumentStore,
        retrier: Retrier,
        cutoff: datetime,
        keep_min_versions: int = 1,
        dry_run: bool = False
    ):
        self.store = store
        self.retrier = retrier
        self.cutoff = cutoff
        self.keep_min_versions = keep_min_versions
        self.dry_run = dry_run

    async def transform(self, item: CandidateItem) -> TransformOutcome:
        try:
            versions = await self.retrier.call(
                lambda: self.store.get_file_versions(item),
                f"list versions of {item.name}"
            )
        except PermanentRemoteError as e:
            return Failed(error=str(e))

        plan = select_versions_to_delete(versions, self.cutoff, self.keep_min_versions)
        if plan.skip_reason is not None:
            logger.info(f"{item.name}: skipped ({plan.skip_reason.value}, {len(versions)} version(s))")
            return Skipped(reason=plan.skip_reason, detail=f"{len(versions)} version(s)")

        logger.info(
            f"{item.name}: {len(plan.to_delete)} of {len(versions)} version(s) eligible "
            f"(older than cutoff: {len(plan.older)}, retained: {len(plan.retained)})"
        )

        deleted = 0
        freed = 0
        errors = []
        for version in plan.to_delete:
            if self.dry_run:
                logger.info(
                    f"[DRY RUN] Would delete {item.name} version {version.label} "
                    f"({version.created:%Y-%m-%d}, {format_size(version.size)})"
                )
                deleted += 1
                freed += version.size
                continue

            try:
                await self.retrier.call(
                    lambda v=version: self.store.delete_version(item, v.label),
                    f"delete {item.name} version {version.label}"
                )
            except PermanentRemoteError as e:
                logger.error(f"{item.name}: version {version.label} not deleted: {e}")
                errors.append(f"{version.label}: {e}")
                continue

            deleted += 1
            freed += version.size

        if not deleted and errors:
            return Failed(error="; ".join(errors))

        return Succeeded(
            bytes_saved=freed,
            units_changed=deleted,
            units_total=len(versions),
            size_before=item.size,
            size_after=item.size,
            dry_run=self.dry_run,
            detail=f"{len(errors)} deletion(s) failed" if errors else "",
        )
