"""
Upload strategies for rewritten documents
Tried in order until one succeeds; the remote file is only replaced by a complete upload
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence

import aiofiles

from ..errors import PermanentRemoteError
from ..models import CandidateItem
from ..sharepoint_sync.sharepoint_client import DocumentStore
from ..utils.retry import Retrier

logger = logging.getLogger(__name__)


async def _read_bytes(local_path: Path) -> bytes:
    async with aiofiles.open(local_path, 'rb') as f:
        return await f.read()


class UploadStrategy:
    name = "upload"

    def applies_to(self, size: int) -> bool:
        return True

    async def upload(self, store: DocumentStore, item: CandidateItem, local_path: Path) -> None:
        raise NotImplementedError


class ReplaceContentUpload(UploadStrategy):
    """Direct content replacement of the existing item"""

    name = "replace-content"

    async def upload(self, store: DocumentStore, item: CandidateItem, local_path: Path) -> None:
        await store.replace_content(item, await _read_bytes(local_path))


class AddFileUpload(UploadStrategy):
    """Generic add-by-path with overwrite"""

    name = "add-file"

    async def upload(self, store: DocumentStore, item: CandidateItem, local_path: Path) -> None:
        await store.add_file(item, await _read_bytes(local_path))


class ChunkedUpload(UploadStrategy):
    """Upload session; only used for files at or above the threshold"""

    name = "chunked"

    def __init__(self, threshold: int = 4 * 1024 * 1024):
        self.threshold = threshold

    def applies_to(self, size: int) -> bool:
        return size >= self.threshold

    async def upload(self, store: DocumentStore, item: CandidateItem, local_path: Path) -> None:
        await store.upload_chunked(item, local_path)


def default_strategies(chunked_threshold: int = 4 * 1024 * 1024) -> List[UploadStrategy]:
    return [ReplaceContentUpload(), AddFileUpload(), ChunkedUpload(chunked_threshold)]


class Uploader:
    """Runs upload strategies through the retrier"""

    def __init__(
        self,
        store: DocumentStore,
        retrier: Retrier,
        strategies: Optional[Sequence[UploadStrategy]] = None
    ):
        self.store = store
        self.retrier = retrier
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    async def upload(self, item: CandidateItem, local_path: Path) -> str:
        """
        Upload local_path over the remote item

        Returns:
            Name of the strategy that succeeded

        Raises:
            PermanentRemoteError: every applicable strategy failed (reasons aggregated)
        """
        size = local_path.stat().st_size
        reasons = []
        for strategy in self.strategies:
            if not strategy.applies_to(size):
                continue
            try:
                await self.retrier.call(
                    lambda s=strategy: s.upload(self.store, item, local_path),
                    f"{strategy.name} upload of {item.name}"
                )
            except PermanentRemoteError as e:
                logger.warning(f"Upload strategy {strategy.name} failed for {item.name}: {e}")
                reasons.append(f"{strategy.name}: {e}")
                continue

            logger.info(f"Uploaded {item.name} via {strategy.name}")
            return strategy.name

        raise PermanentRemoteError(f"All upload strategies failed for {item.path}: " + "; ".join(reasons))
