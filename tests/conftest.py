"""Shared test fixtures."""

from __future__ import annotations

import io
import posixpath
import random
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest
from PIL import Image

from spo_reclaim.errors import ConnectionSetupError, RemoteStoreError
from spo_reclaim.models import CandidateItem, VersionRecord
from spo_reclaim.sharepoint_sync.sharepoint_client import ListingPage

MUTATING_CALLS = {"delete_version", "replace_content", "add_file", "upload_chunked"}


def make_item(path: str, size: int = 20_000_000, modified: datetime | None = None) -> CandidateItem:
    return CandidateItem(
        name=posixpath.basename(path),
        path=path,
        size=size,
        modified=modified or datetime(2024, 6, 1, tzinfo=timezone.utc),
        item_id=f"id-{path}",
        drive_id="drive-1",
    )


def make_version(label: str, created: str, size: int = 1_000_000) -> VersionRecord:
    return VersionRecord(
        label=label,
        created=datetime.fromisoformat(created).replace(tzinfo=timezone.utc),
        size=size,
    )


class RecordingSleep:
    """Awaitable sleep replacement that only records the delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeDocumentStore:
    """In-memory DocumentStore."""

    def __init__(self, items=None, versions=None, packages=None, list_page_size: int = 2):
        self.items: list[CandidateItem] = list(items or [])
        self.versions: dict[str, list[VersionRecord]] = dict(versions or {})
        self.packages: dict[str, bytes] = dict(packages or {})
        self.list_page_size = list_page_size
        self.calls: list[tuple] = []
        self.uploads: list[tuple[str, str, bytes]] = []
        self.deleted: list[tuple[str, str]] = []
        self.connect_error: Exception | None = None
        self.search_error: Exception | None = None
        self.list_error: Exception | None = None
        self.download_error: Exception | None = None
        self.failing_uploads: dict[str, Exception] = {}
        self.failing_deletes: set[tuple[str, str]] = set()
        self.connected = False
        self.closed = False

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    async def connect(self) -> None:
        self.calls.append(("connect",))
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def search(self, query, start_row, row_limit):
        self.calls.append(("search", query, start_row, row_limit))
        if self.search_error:
            raise self.search_error
        return self.items[start_row:start_row + row_limit]

    async def list_items(self, folder_path="", next_link=None):
        self.calls.append(("list_items", folder_path, next_link))
        if self.list_error:
            raise self.list_error
        files = [i for i in self.items if posixpath.dirname(i.path) == folder_path]
        folders = set()
        prefix = f"{folder_path}/" if folder_path else ""
        for item in self.items:
            if not item.path.startswith(prefix):
                continue
            rest = item.path[len(prefix):]
            if "/" in rest:
                folders.add(prefix + rest.split("/", 1)[0])
        offset = int(next_link) if next_link else 0
        end = offset + self.list_page_size
        return ListingPage(
            files=files[offset:end],
            folders=sorted(folders) if offset == 0 else [],
            next_link=str(end) if end < len(files) else None,
        )

    async def get_file_versions(self, item):
        self.calls.append(("get_file_versions", item.path))
        return list(self.versions.get(item.path, []))

    async def delete_version(self, item, label):
        self.calls.append(("delete_version", item.path, label))
        if (item.path, label) in self.failing_deletes:
            raise RemoteStoreError(f"cannot delete {label}")
        self.deleted.append((item.path, label))

    async def download_file(self, item, local_path: Path):
        self.calls.append(("download_file", item.path))
        if self.download_error:
            raise self.download_error
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(self.packages[item.path])
        return local_path

    async def _upload(self, method, item, data):
        self.calls.append((method, item.path))
        if method in self.failing_uploads:
            raise self.failing_uploads[method]
        self.uploads.append((method, item.path, data))

    async def replace_content(self, item, data):
        await self._upload("replace_content", item, data)

    async def add_file(self, item, data):
        await self._upload("add_file", item, data)

    async def upload_chunked(self, item, local_path):
        await self._upload("upload_chunked", item, local_path.read_bytes())

    async def close(self):
        self.calls.append(("close",))
        self.closed = True


# ========== OOXML package builder ==========

W_NS = "http://schemas.openxmlformats.org/wordprocessingml/2006/main"
A_NS = "http://schemas.openxmlformats.org/drawingml/2006/main"
R_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
IMAGE_REL = "http://schemas.openxmlformats.org/officeDocument/2006/relationships/image"


def png_bytes(width: int = 1600, height: int = 1200, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def vector_bytes(size: int = 40_000, seed: int = 0) -> bytes:
    # Incompressible stand-in for an EMF/WMF payload
    return random.Random(seed).randbytes(size)


def build_docx(media: dict[str, bytes]) -> bytes:
    """Minimal DOCX with one image relationship + blip reference per media file."""
    rels = []
    blips = []
    for index, name in enumerate(media, 1):
        rels.append(f'<Relationship Id="rId{index + 10}" Type="{IMAGE_REL}" Target="media/{name}"/>')
        blips.append(f'<w:p><a:blip r:embed="rId{index + 10}"/></w:p>')

    overrides = "".join(
        f'<Override PartName="/word/media/{name}" ContentType="image/x-emf"/>'
        for name in media if name.endswith(".emf")
    )
    files = {
        "[Content_Types].xml": (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
            '<Default Extension="xml" ContentType="application/xml"/>'
            '<Default Extension="png" ContentType="image/png"/>'
            '<Override PartName="/word/document.xml" '
            'ContentType="application/vnd.openxmlformats-officedocument.wordprocessingml.document.main+xml"/>'
            f'{overrides}</Types>'
        ).encode(),
        "_rels/.rels": (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
            '<Relationship Id="rId1" '
            'Type="http://schemas.openxmlformats.org/officeDocument/2006/relationships/officeDocument" '
            'Target="word/document.xml"/></Relationships>'
        ).encode(),
        "word/document.xml": (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            f'<w:document xmlns:w="{W_NS}" xmlns:a="{A_NS}" xmlns:r="{R_NS}">'
            f'<w:body>{"".join(blips)}</w:body></w:document>'
        ).encode(),
        "word/_rels/document.xml.rels": (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
            '<Relationships xmlns="http://schemas.openxmlformats.org/package/2006/relationships">'
            f'{"".join(rels)}</Relationships>'
        ).encode(),
    }
    for name, data in media.items():
        files[f"word/media/{name}"] = data

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return FakeDocumentStore()


@pytest.fixture
def failing_connect_store():
    s = FakeDocumentStore()
    s.connect_error = ConnectionSetupError("site not found")
    return s
