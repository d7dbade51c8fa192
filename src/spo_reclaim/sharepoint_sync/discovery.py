"""
Candidate discovery
Paginated search with enumeration fallback; both yield the same capped, size-sorted list
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence

from ..errors import DiscoveryError
from ..models import CandidateItem, ensure_utc
from .sharepoint_client import DocumentStore

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class DiscoveryFilter:
    """Size / name / date predicates applied by every strategy"""
    extension: str = ".pptx"
    name_contains: str = ""
    min_size: int = 0
    max_size: Optional[int] = None
    modified_after: Optional[datetime] = None
    modified_before: Optional[datetime] = None

    def matches(self, item: CandidateItem) -> bool:
        name = item.name.lower()
        if not name.endswith(self.extension.lower()):
            return False
        # Office lock / owner files
        if item.name.startswith("~$"):
            return False
        if self.name_contains and self.name_contains.lower() not in name:
            return False
        if item.size < self.min_size:
            return False
        if self.max_size is not None and item.size > self.max_size:
            return False
        modified = ensure_utc(item.modified)
        if self.modified_after is not None and modified < ensure_utc(self.modified_after):
            return False
        if self.modified_before is not None and modified >= ensure_utc(self.modified_before):
            return False
        return True

    def to_kql(self, site_url: str = "") -> str:
        """KQL query string for the search strategy"""
        parts = [f"fileExtension:{self.extension.lstrip('.')}"]
        if self.name_contains:
            parts.append(f'filename:"{self.name_contains}"')
        if self.min_size:
            parts.append(f"size>={self.min_size}")
        if self.max_size is not None:
            parts.append(f"size<={self.max_size}")
        if self.modified_after is not None:
            parts.append(f"LastModifiedTime>={self.modified_after:%Y-%m-%d}")
        if self.modified_before is not None:
            parts.append(f"LastModifiedTime<{self.modified_before:%Y-%m-%d}")
        if site_url:
            parts.append(f'path:"{site_url.rstrip("/")}"')
        return " AND ".join(parts)


def finalize_candidates(items: Iterable[CandidateItem], cap: int) -> List[CandidateItem]:
    """
    Dedupe, truncate to cap, sort by size (largest first)

    Items are deduplicated by remote identity (drive + item id) when known,
    otherwise by path.

    Args:
        items: Candidates in discovery order
        cap: Maximum number of candidates

    Returns:
        Final candidate list
    """
    seen = set()
    unique = []
    for item in items:
        if item.identity in seen:
            continue
        seen.add(item.identity)
        unique.append(item)
    return sorted(unique[:cap], key=lambda i: i.size, reverse=True)


class SearchDiscovery:
    """Paginated remote search"""

    name = "search"

    def __init__(
        self,
        store: DocumentStore,
        filters: DiscoveryFilter,
        page_size: int = 500,
        cap: int = 5000,
        page_pause: float = 2.0,
        site_url: str = "",
        sleep: Optional[SleepFunc] = None
    ):
        self.store = store
        self.filters = filters
        self.page_size = page_size
        self.cap = cap
        self.page_pause = page_pause
        self.site_url = site_url
        self._sleep = sleep or asyncio.sleep

    async def discover(self) -> List[CandidateItem]:
        query = self.filters.to_kql(self.site_url)
        logger.info(f"Search query: {query}")

        found: List[CandidateItem] = []
        start_row = 0
        page_no = 0
        while True:
            try:
                page = await self.store.search(query, start_row, self.page_size)
            except Exception as e:
                raise DiscoveryError(f"search page at row {start_row} failed: {e}") from e
            page_no += 1
            if not page:
                break

            found.extend(item for item in page if self.filters.matches(item))
            logger.info(f"Search page {page_no}: {len(page)} row(s), {len(found)} candidate(s) so far")

            if len(page) < self.page_size or len(found) >= self.cap:
                break

            start_row += self.page_size
            await self._sleep(self.page_pause)

        return finalize_candidates(found, self.cap)


class EnumerationDiscovery:
    """Library walk with client-side filtering (no search index dependency)"""

    name = "enumeration"

    def __init__(
        self,
        store: DocumentStore,
        filters: DiscoveryFilter,
        cap: int = 5000,
        page_pause: float = 2.0,
        root_folder: str = "",
        sleep: Optional[SleepFunc] = None
    ):
        self.store = store
        self.filters = filters
        self.cap = cap
        self.page_pause = page_pause
        self.root_folder = root_folder
        self._sleep = sleep or asyncio.sleep

    async def discover(self) -> List[CandidateItem]:
        found: List[CandidateItem] = []
        folders = deque([self.root_folder])
        pages = 0

        while folders and len(found) < self.cap:
            folder = folders.popleft()
            next_link = None
            while True:
                if pages:
                    await self._sleep(self.page_pause)
                try:
                    page = await self.store.list_items(folder, next_link)
                except Exception as e:
                    raise DiscoveryError(f"listing of '{folder or 'root'}' failed: {e}") from e
                pages += 1

                found.extend(item for item in page.files if self.filters.matches(item))
                folders.extend(page.folders)

                next_link = page.next_link
                if not next_link or len(found) >= self.cap:
                    break

        logger.info(f"Enumeration: {pages} page(s), {len(found)} candidate(s)")
        return finalize_candidates(found, self.cap)


class DiscoveryProvider:
    """Runs strategies in order and falls back on failure"""

    def __init__(self, strategies: Sequence):
        self.strategies = list(strategies)

    async def discover(self) -> List[CandidateItem]:
        """
        Candidates from the first strategy that succeeds

        Returns:
            Size-sorted candidates, or an empty list when every strategy fails
        """
        for strategy in self.strategies:
            try:
                candidates = await strategy.discover()
            except Exception as e:
                logger.error(f"Discovery via {strategy.name} failed: {e}")
                continue
            logger.info(f"Discovery via {strategy.name}: {len(candidates)} candidate(s)")
            return candidates

        logger.warning("All discovery strategies failed; nothing to do")
        return []


def build_discovery(
    store: DocumentStore,
    filters: DiscoveryFilter,
    strategy: str = "search",
    page_size: int = 500,
    cap: int = 5000,
    page_pause: float = 2.0,
    site_url: str = "",
    sleep: Optional[SleepFunc] = None
) -> DiscoveryProvider:
    """'search' falls back to enumeration; 'enumeration' walks the library only"""
    enumeration = EnumerationDiscovery(store, filters, cap=cap, page_pause=page_pause, sleep=sleep)
    if strategy == "enumeration":
        return DiscoveryProvider([enumeration])
    search = SearchDiscovery(
        store, filters, page_size=page_size, cap=cap,
        page_pause=page_pause, site_url=site_url, sleep=sleep
    )
    return DiscoveryProvider([search, enumeration])
