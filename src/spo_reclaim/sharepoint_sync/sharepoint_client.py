"""
SharePoint Online document store client
Microsoft Graph API access for discovery, versions, download and upload
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol
from urllib.parse import quote, urlparse

import aiofiles
import aiohttp
from azure.identity.aio import ClientSecretCredential
from msgraph import GraphServiceClient
from msgraph.generated.models.o_data_errors.o_data_error import ODataError

from ..errors import ConnectionSetupError, PermanentRemoteError, RemoteStoreError, TransientRemoteError
from ..models import CandidateItem, VersionRecord

logger = logging.getLogger(__name__)

GRAPH_SCOPES = ['https://graph.microsoft.com/.default']


@dataclass
class ListingPage:
    """One page of a folder listing"""
    files: List[CandidateItem] = field(default_factory=list)
    folders: List[str] = field(default_factory=list)
    next_link: Optional[str] = None


class DocumentStore(Protocol):
    """Remote document store used by discovery and the transformers"""

    async def connect(self) -> None: ...

    async def search(self, query: str, start_row: int, row_limit: int) -> List[CandidateItem]: ...

    async def list_items(self, folder_path: str = "", next_link: Optional[str] = None) -> ListingPage: ...

    async def get_file_versions(self, item: CandidateItem) -> List[VersionRecord]: ...

    async def delete_version(self, item: CandidateItem, label: str) -> None: ...

    async def download_file(self, item: CandidateItem, local_path: Path) -> Path: ...

    async def replace_content(self, item: CandidateItem, data: bytes) -> None: ...

    async def add_file(self, item: CandidateItem, data: bytes) -> None: ...

    async def upload_chunked(self, item: CandidateItem, local_path: Path) -> None: ...

    async def close(self) -> None: ...


def describe_odata_error(e: ODataError) -> str:
    """'code (HTTP status): message' so throttling text is visible to the retrier"""
    status = getattr(e, 'response_status_code', None)
    code = e.error.code if e.error else None
    message = e.error.message if e.error else str(e)
    return f"{code or 'ODataError'} (HTTP {status}): {message}"


def to_store_error(e: ODataError) -> RemoteStoreError:
    description = describe_odata_error(e)
    status = getattr(e, 'response_status_code', None)
    if status == 429 or status == 503:
        return TransientRemoteError(description)
    if status in (401, 403, 404):
        return PermanentRemoteError(description)
    return RemoteStoreError(description)


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GraphDocumentStore:
    """SharePoint Online document library over Microsoft Graph"""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        site_url: str,
        library: str = "Documents",
        scopes: Optional[List[str]] = None,
        chunk_size: int = 320 * 1024 * 16
    ):
        """
        Args:
            tenant_id: Azure AD tenant ID
            client_id: Application (client) ID
            client_secret: Client secret
            site_url: SharePoint site URL, e.g. "https://company.sharepoint.com/sites/Engineering"
            library: Document library (drive) name
            scopes: Access scopes (default: ['https://graph.microsoft.com/.default'])
            chunk_size: Upload session chunk size (multiple of 320 KiB)
        """
        self.site_url = site_url
        self.library = library
        self.scopes = scopes or GRAPH_SCOPES
        self.chunk_size = chunk_size

        self.credential = ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret
        )
        self.graph_client = GraphServiceClient(
            credentials=self.credential,
            scopes=self.scopes
        )

        self.site_id: Optional[str] = None
        self.drive_id: Optional[str] = None

    # ========== Connection ==========

    async def connect(self) -> None:
        """Resolve site and library; any failure here is fatal for the run"""
        try:
            self.site_id = await self.get_site_id(self.site_url)
            self.drive_id = await self.get_drive_id(self.site_id, self.library)
        except Exception as e:
            raise ConnectionSetupError(f"Cannot connect to {self.site_url}: {e}") from e

    async def get_site_id(self, site_url: str) -> str:
        """
        Site ID from the site URL

        Args:
            site_url: SharePoint site URL

        Returns:
            Site ID
        """
        parsed = urlparse(site_url)
        try:
            site = await self.graph_client.sites.by_site_id(
                f"{parsed.netloc}:{parsed.path}"
            ).get()
        except ODataError as e:
            logger.error(f"Site ID lookup failed: {describe_odata_error(e)}")
            raise to_store_error(e) from e

        logger.info(f"Site ID: {site.id}")
        return site.id

    async def get_drive_id(self, site_id: str, drive_name: str = "Documents") -> str:
        """
        Document library (drive) ID of the site

        Args:
            site_id: Site ID
            drive_name: Library name

        Returns:
            Drive ID
        """
        try:
            drives = await self.graph_client.sites.by_site_id(site_id).drives.get()
        except ODataError as e:
            logger.error(f"Drive lookup failed: {describe_odata_error(e)}")
            raise to_store_error(e) from e

        for drive in drives.value or []:
            if drive.name == drive_name:
                logger.info(f"Drive ID: {drive.id} (name: {drive_name})")
                return drive.id

        raise PermanentRemoteError(f"Library '{drive_name}' not found")

    async def close(self) -> None:
        """Release the credential"""
        await self.credential.close()
        logger.info("SharePoint connection closed")

    # ========== Discovery ==========

    def _to_candidate(self, drive_item, folder_path: Optional[str] = None) -> CandidateItem:
        if folder_path is None:
            folder_path = self._parent_path(drive_item)
        path = f"{folder_path}/{drive_item.name}" if folder_path else drive_item.name
        drive_id = None
        parent_id = None
        if drive_item.parent_reference is not None:
            drive_id = drive_item.parent_reference.drive_id
            parent_id = drive_item.parent_reference.id
        return CandidateItem(
            name=drive_item.name,
            path=path,
            size=drive_item.size or 0,
            modified=_as_utc(drive_item.last_modified_date_time),
            item_id=drive_item.id,
            drive_id=drive_id or self.drive_id,
            parent_id=parent_id,
        )

    @staticmethod
    def _parent_path(drive_item) -> str:
        # parentReference.path looks like "/drives/{id}/root:/Folder/Sub"
        parent = drive_item.parent_reference
        raw = (parent.path if parent is not None else None) or ""
        _, _, relative = raw.partition("root:")
        return relative.strip("/")

    async def _with_location(self, drive_item):
        """
        Search hits usually carry no parentReference.path; fetch the item so
        the candidate gets its real library path

        Args:
            drive_item: driveItem resource from a search hit

        Returns:
            A driveItem with parentReference.path filled in where Graph has one
        """
        parent = drive_item.parent_reference
        if parent is not None and parent.path:
            return drive_item
        drive_id = (parent.drive_id if parent is not None else None) or self.drive_id
        try:
            resolved = await self.graph_client.drives.by_drive_id(drive_id).items.by_drive_item_id(
                drive_item.id
            ).get()
        except ODataError as e:
            logger.error(f"Location lookup failed for {drive_item.name}: {describe_odata_error(e)}")
            raise to_store_error(e) from e
        return resolved or drive_item

    async def search(self, query: str, start_row: int, row_limit: int) -> List[CandidateItem]:
        """
        One page of driveItem search results

        Args:
            query: KQL query string
            start_row: Row offset
            row_limit: Page size

        Returns:
            Candidate items on the page
        """
        from msgraph.generated.search.query.query_post_request_body import QueryPostRequestBody
        from msgraph.generated.models.search_request import SearchRequest
        from msgraph.generated.models.search_query import SearchQuery

        request_body = QueryPostRequestBody(
            requests=[
                SearchRequest(
                    entity_types=["driveItem"],
                    query=SearchQuery(query_string=query),
                    from_=start_row,
                    size=row_limit
                )
            ]
        )

        try:
            results = await self.graph_client.search.query.post(request_body)
        except ODataError as e:
            logger.error(f"Search failed: {describe_odata_error(e)}")
            raise to_store_error(e) from e

        items = []
        for result_set in results.value or []:
            for container in result_set.hits_containers or []:
                for hit in container.hits or []:
                    resource = hit.resource
                    if getattr(resource, 'name', None):
                        items.append(self._to_candidate(await self._with_location(resource)))

        logger.info(f"Search page at row {start_row}: {len(items)} hit(s)")
        return items

    async def list_items(self, folder_path: str = "", next_link: Optional[str] = None) -> ListingPage:
        """
        One page of a library folder listing

        Args:
            folder_path: Folder relative to the library root ("" for root)
            next_link: @odata.nextLink of the previous page

        Returns:
            Files, subfolders and the next page link
        """
        drive = self.graph_client.drives.by_drive_id(self.drive_id)
        try:
            if next_link:
                children = await drive.items.by_drive_item_id("root").children.with_url(next_link).get()
            elif folder_path:
                children = await drive.items.by_drive_item_id(
                    f"root:/{quote(folder_path)}:"
                ).children.get()
            else:
                children = await drive.items.by_drive_item_id("root").children.get()
        except ODataError as e:
            logger.error(f"Listing failed ({folder_path or 'root'}): {describe_odata_error(e)}")
            raise to_store_error(e) from e

        page = ListingPage(next_link=children.odata_next_link)
        for child in children.value or []:
            if child.folder:
                page.folders.append(f"{folder_path}/{child.name}" if folder_path else child.name)
            elif child.file:
                page.files.append(self._to_candidate(child, folder_path))

        logger.debug(f"Listing {folder_path or 'root'}: {len(page.files)} file(s), {len(page.folders)} folder(s)")
        return page

    # ========== Versions ==========

    def _item(self, item: CandidateItem):
        drive_id = item.drive_id or self.drive_id
        return self.graph_client.drives.by_drive_id(drive_id).items.by_drive_item_id(item.item_id)

    async def get_file_versions(self, item: CandidateItem) -> List[VersionRecord]:
        try:
            versions = await self._item(item).versions.get()
        except ODataError as e:
            raise to_store_error(e) from e

        return [
            VersionRecord(
                label=v.id,
                created=_as_utc(v.last_modified_date_time),
                size=v.size or 0
            )
            for v in versions.value or []
        ]

    async def delete_version(self, item: CandidateItem, label: str) -> None:
        try:
            await self._item(item).versions.by_drive_item_version_id(label).delete()
        except ODataError as e:
            raise to_store_error(e) from e

    # ========== Download / upload ==========

    async def _download_url(self, item: CandidateItem) -> str:
        try:
            drive_item = await self._item(item).get()
        except ODataError as e:
            raise to_store_error(e) from e
        url = (drive_item.additional_data or {}).get('@microsoft.graph.downloadUrl')
        if not url:
            raise PermanentRemoteError(f"No download URL for {item.path}")
        return url

    async def download_file(self, item: CandidateItem, local_path: Path, chunk_size: int = 8192) -> Path:
        """
        Stream a file to local scratch storage

        Args:
            item: Remote file
            local_path: Destination path
            chunk_size: Read chunk size in bytes

        Returns:
            Saved file path
        """
        local_path.parent.mkdir(parents=True, exist_ok=True)
        download_url = await self._download_url(item)

        async with aiohttp.ClientSession() as session:
            async with session.get(download_url) as resp:
                if resp.status != 200:
                    raise RemoteStoreError(f"Download failed: HTTP {resp.status}")

                async with aiofiles.open(local_path, 'wb') as f:
                    async for chunk in resp.content.iter_chunked(chunk_size):
                        await f.write(chunk)

        logger.info(f"Downloaded: {item.path} -> {local_path}")
        return local_path

    async def replace_content(self, item: CandidateItem, data: bytes) -> None:
        """PUT /items/{id}/content"""
        try:
            await self._item(item).content.put(data)
        except ODataError as e:
            raise to_store_error(e) from e

    async def add_file(self, item: CandidateItem, data: bytes) -> None:
        """PUT /items/{parent-id}:/{name}:/content (creates or replaces in the original folder)"""
        drive_id = item.drive_id or self.drive_id
        if item.parent_id:
            address = f"{item.parent_id}:/{quote(item.name)}:"
        else:
            address = f"root:/{quote(item.path)}:"
        try:
            await self.graph_client.drives.by_drive_id(drive_id).items.by_drive_item_id(address).content.put(data)
        except ODataError as e:
            raise to_store_error(e) from e

    async def upload_chunked(self, item: CandidateItem, local_path: Path) -> None:
        """Upload session with sequential Content-Range chunks"""
        from msgraph.generated.drives.item.items.item.create_upload_session.create_upload_session_post_request_body import (
            CreateUploadSessionPostRequestBody,
        )
        from msgraph.generated.models.drive_item_uploadable_properties import DriveItemUploadableProperties

        body = CreateUploadSessionPostRequestBody(
            item=DriveItemUploadableProperties(
                additional_data={"@microsoft.graph.conflictBehavior": "replace"}
            )
        )
        try:
            upload_session = await self._item(item).create_upload_session.post(body)
        except ODataError as e:
            raise to_store_error(e) from e

        total = local_path.stat().st_size
        offset = 0
        async with aiohttp.ClientSession() as session:
            async with aiofiles.open(local_path, 'rb') as f:
                while offset < total:
                    chunk = await f.read(self.chunk_size)
                    end = offset + len(chunk) - 1
                    headers = {
                        'Content-Length': str(len(chunk)),
                        'Content-Range': f"bytes {offset}-{end}/{total}",
                    }
                    async with session.put(upload_session.upload_url, data=chunk, headers=headers) as resp:
                        if resp.status not in (200, 201, 202):
                            text = await resp.text()
                            if resp.status == 429:
                                raise TransientRemoteError(f"Chunk upload throttled (HTTP 429): {text}")
                            raise RemoteStoreError(f"Chunk upload failed: HTTP {resp.status}: {text}")
                    offset = end + 1

        logger.info(f"Chunked upload finished: {item.path} ({total} bytes)")
