"""
Office document image shrinking
Points vector-image relationships (EMF/WMF) at raster images, rendering one where
no counterpart exists, downsizes rasters, drops the vector files and re-uploads
the repacked document
"""

import hashlib
import logging
import os
import posixpath
import re
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from lxml import etree
from PIL import Image, UnidentifiedImageError

from ..errors import LocalIOError, PermanentRemoteError, UnconvertibleAssetsError
from ..models import CandidateItem, Failed, SkipReason, Skipped, Succeeded, TransformOutcome, format_size
from ..sharepoint_sync.sharepoint_client import DocumentStore
from ..utils.retry import Retrier
from .base import ItemTransformer
from .upload import Uploader

logger = logging.getLogger(__name__)

VECTOR_EXTENSIONS = {'.emf', '.wmf'}
RASTER_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tif', '.tiff'}
MEDIA_DIRS = ('word/media', 'ppt/media', 'xl/media')

CONTENT_TYPES = '[Content_Types].xml'
PKG_REL_NS = 'http://schemas.openxmlformats.org/package/2006/relationships'
CT_NS = 'http://schemas.openxmlformats.org/package/2006/content-types'
R_NS = 'http://schemas.openxmlformats.org/officeDocument/2006/relationships'


@dataclass
class ShrinkResult:
    """Local rewrite summary for one package"""
    vectors_found: int
    vectors_removed: int
    rasters_resized: int
    relationships_rewritten: int
    references_updated: int
    size_before: int
    size_after: int


def _extension(name: str) -> str:
    return posixpath.splitext(name)[1].lower()


def _natural_key(name: str):
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r'(\d+)', name)]


def build_asset_mapping(media_names: List[str]) -> Dict[str, str]:
    """
    Vector image -> raster image mapping from the media directory contents

    A raster with the same stem wins; otherwise the nearest preceding raster
    (natural name order) that no other vector has claimed. Vectors without a
    counterpart are left out; shrink_package renders a raster for them.

    Args:
        media_names: File names in the media directory

    Returns:
        {vector file name: raster file name}
    """
    ordered = sorted(media_names, key=_natural_key)
    raster_by_stem = {
        posixpath.splitext(n)[0].lower(): n for n in ordered if _extension(n) in RASTER_EXTENSIONS
    }

    mapping: Dict[str, str] = {}
    claimed = set()

    for name in ordered:
        if _extension(name) not in VECTOR_EXTENSIONS:
            continue
        same_stem = raster_by_stem.get(posixpath.splitext(name)[0].lower())
        if same_stem:
            mapping[name] = same_stem
            claimed.add(same_stem)

    for index, name in enumerate(ordered):
        if _extension(name) not in VECTOR_EXTENSIONS or name in mapping:
            continue
        counterpart = next(
            (n for n in reversed(ordered[:index])
             if _extension(n) in RASTER_EXTENSIONS and n not in claimed),
            None
        )
        if counterpart is None:
            logger.info(f"No raster counterpart for {name}")
            continue
        mapping[name] = counterpart
        claimed.add(counterpart)

    return mapping


def _parse_xml(path: Path):
    try:
        return etree.parse(str(path))
    except (etree.XMLSyntaxError, OSError) as e:
        raise LocalIOError(f"Cannot parse {path.name}: {e}") from e


def _owning_part(rels_path: str) -> str:
    # word/_rels/document.xml.rels -> word/document.xml
    rels_dir, rels_name = posixpath.split(rels_path)
    part_dir = posixpath.dirname(rels_dir)
    return posixpath.join(part_dir, rels_name[:-len('.rels')])


def rewrite_relationships(unpacked_dir: Path, media_dir: str, mapping: Dict[str, str]) -> Dict[str, Dict[str, str]]:
    """
    Retarget relationships that point at mapped vector images

    Args:
        unpacked_dir: Extracted package root
        media_dir: Media directory inside the package (e.g. 'word/media')
        mapping: Vector -> raster file names

    Returns:
        {owning part: {relationship id: new target}}
    """
    rewritten: Dict[str, Dict[str, str]] = {}

    for rels_file in sorted(unpacked_dir.rglob('*.rels')):
        rels_path = rels_file.relative_to(unpacked_dir).as_posix()
        part = _owning_part(rels_path)
        part_dir = posixpath.dirname(part)

        tree = _parse_xml(rels_file)
        changed = {}
        for rel in tree.getroot().iter(f'{{{PKG_REL_NS}}}Relationship'):
            if rel.get('TargetMode') == 'External':
                continue
            target = rel.get('Target', '')
            resolved = posixpath.normpath(posixpath.join(part_dir, target)).lstrip('/')
            if target.startswith('/'):
                resolved = target.lstrip('/')
            target_dir, target_name = posixpath.split(resolved)
            if target_dir != media_dir or target_name not in mapping:
                continue

            new_target = posixpath.join(posixpath.dirname(target), mapping[target_name])
            rel.set('Target', new_target)
            changed[rel.get('Id')] = new_target

        if changed:
            tree.write(str(rels_file), xml_declaration=True, encoding='UTF-8', standalone=True)
            rewritten[part] = changed
            logger.debug(f"{rels_path}: {len(changed)} relationship(s) retargeted")

    return rewritten


def count_content_references(unpacked_dir: Path, rewritten: Dict[str, Dict[str, str]]) -> int:
    """
    References (r:embed, r:id, r:link, ...) in each part that use a retargeted relationship

    The references follow the relationship id, so the part itself is left unchanged.
    """
    total = 0
    for part, rel_ids in rewritten.items():
        part_path = unpacked_dir / part
        if not part_path.is_file():
            continue
        tree = _parse_xml(part_path)
        for element in tree.iter(tag=etree.Element):
            for attr, value in element.attrib.items():
                if attr.startswith(f'{{{R_NS}}}') and value in rel_ids:
                    total += 1
    return total


def resize_raster(image_path: Path, target_width: int) -> bool:
    """
    Downscale an image to target_width keeping the aspect ratio (LANCZOS)

    Returns:
        True when the file was rewritten
    """
    try:
        with Image.open(image_path) as img:
            width, height = img.size
            if width <= target_width:
                return False
            image_format = img.format
            new_height = max(1, round(height * target_width / width))
            resized = img.resize((target_width, new_height), Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Cannot resize {image_path.name}: {e}")
        return False

    save_kwargs = {}
    if image_format == 'JPEG':
        save_kwargs = {'quality': 85, 'optimize': True}
    elif image_format == 'PNG':
        save_kwargs = {'optimize': True}
    resized.save(image_path, format=image_format, **save_kwargs)
    logger.debug(f"Resized {image_path.name}: {width}x{height} -> {target_width}x{new_height}")
    return True


def rasterize_vector(vector_path: Path, output_path: Path) -> bool:
    """
    Render an EMF/WMF image to PNG

    Pillow only renders these where a WMF handler is registered (Windows by
    default); elsewhere the image is reported as not renderable.

    Returns:
        True when output_path was written
    """
    try:
        with Image.open(vector_path) as img:
            img.load()
            img.save(output_path, format='PNG', optimize=True)
    except (UnidentifiedImageError, OSError, ValueError) as e:
        logger.warning(f"Cannot render {vector_path.name}: {e}")
        output_path.unlink(missing_ok=True)
        return False
    logger.debug(f"Rendered {vector_path.name} -> {output_path.name}")
    return True


def _free_raster_name(vector_name: str, taken: List[str]) -> str:
    stem = posixpath.splitext(vector_name)[0]
    used = {n.lower() for n in taken}
    candidate = f'{stem}.png'
    counter = 0
    while candidate.lower() in used:
        counter += 1
        suffix = '_raster' if counter == 1 else f'_raster{counter}'
        candidate = f'{stem}{suffix}.png'
    return candidate


def render_unmapped_vectors(media_path: Path, media_names: List[str], mapping: Dict[str, str]) -> List[str]:
    """
    Render a PNG for every vector image the mapping does not cover

    The mapping is extended in place with the rendered files.

    Returns:
        Names of the rendered PNG files

    Raises:
        UnconvertibleAssetsError: Some vector images could not be rendered
    """
    rendered: List[str] = []
    unconvertible: List[str] = []
    for name in sorted(media_names, key=_natural_key):
        if _extension(name) not in VECTOR_EXTENSIONS or name in mapping:
            continue
        raster_name = _free_raster_name(name, media_names + rendered)
        if rasterize_vector(media_path / name, media_path / raster_name):
            mapping[name] = raster_name
            rendered.append(raster_name)
        else:
            unconvertible.append(name)
    if unconvertible:
        raise UnconvertibleAssetsError(unconvertible)
    return rendered


def ensure_default_content_type(unpacked_dir: Path, extension: str, content_type: str):
    """Add a <Default Extension=...> entry unless the extension already has one"""
    ct_path = unpacked_dir / CONTENT_TYPES
    if not ct_path.is_file():
        return
    tree = _parse_xml(ct_path)
    root = tree.getroot()
    for default in root.iter(f'{{{CT_NS}}}Default'):
        if (default.get('Extension') or '').lower() == extension:
            return
    etree.SubElement(root, f'{{{CT_NS}}}Default', Extension=extension, ContentType=content_type)
    tree.write(str(ct_path), xml_declaration=True, encoding='UTF-8', standalone=True)


def _drop_content_type_overrides(unpacked_dir: Path, removed_parts: List[str]):
    ct_path = unpacked_dir / CONTENT_TYPES
    if not ct_path.is_file():
        return
    tree = _parse_xml(ct_path)
    removed = {f'/{p}' for p in removed_parts}
    root = tree.getroot()
    dropped = 0
    for override in list(root.iter(f'{{{CT_NS}}}Override')):
        if override.get('PartName') in removed:
            root.remove(override)
            dropped += 1
    if dropped:
        tree.write(str(ct_path), xml_declaration=True, encoding='UTF-8', standalone=True)


def repack(unpacked_dir: Path, names: List[str], output_path: Path):
    """Zip the extracted tree back up; [Content_Types].xml first, original order otherwise"""
    ordered = sorted(names, key=lambda n: n != CONTENT_TYPES)
    with zipfile.ZipFile(output_path, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        for name in ordered:
            file_path = unpacked_dir / name
            if name.endswith('/') or not file_path.is_file():
                continue
            zf.write(file_path, arcname=name)


def shrink_package(package_path: Path, work_dir: Path, target_width: int) -> Optional[ShrinkResult]:
    """
    Rewrite an OOXML package in place

    Args:
        package_path: Local .docx/.pptx file (replaced on success)
        work_dir: Scratch directory for extraction
        target_width: Raster width in pixels

    Returns:
        ShrinkResult, or None when the package has no vector images

    Raises:
        UnconvertibleAssetsError: A vector image has no raster counterpart and
            cannot be rendered; the package is left unchanged
        LocalIOError: The package cannot be unpacked, parsed or repacked
    """
    size_before = package_path.stat().st_size
    unpacked_dir = work_dir / 'unpacked'

    try:
        with zipfile.ZipFile(package_path) as zf:
            names = zf.namelist()
            zf.extractall(unpacked_dir)
    except (zipfile.BadZipFile, OSError) as e:
        raise LocalIOError(f"Cannot unpack {package_path.name}: {e}") from e

    media_dir = next((d for d in MEDIA_DIRS if (unpacked_dir / d).is_dir()), None)
    if media_dir is None:
        return None

    media_names = [p.name for p in (unpacked_dir / media_dir).iterdir() if p.is_file()]
    vectors = [n for n in media_names if _extension(n) in VECTOR_EXTENSIONS]
    if not vectors:
        return None

    mapping = build_asset_mapping(media_names)
    rendered = render_unmapped_vectors(unpacked_dir / media_dir, media_names, mapping)
    if rendered:
        ensure_default_content_type(unpacked_dir, 'png', 'image/png')

    rewritten = rewrite_relationships(unpacked_dir, media_dir, mapping)
    references = count_content_references(unpacked_dir, rewritten)

    rasters_resized = sum(
        1 for n in media_names + rendered
        if _extension(n) in RASTER_EXTENSIONS and resize_raster(unpacked_dir / media_dir / n, target_width)
    )

    removed_parts = [f'{media_dir}/{name}' for name in mapping]
    added_parts = [f'{media_dir}/{name}' for name in rendered]
    try:
        for part in removed_parts:
            (unpacked_dir / part).unlink()
        _drop_content_type_overrides(unpacked_dir, removed_parts)

        repacked = work_dir / 'repacked.tmp'
        repack(unpacked_dir, [n for n in names if n not in removed_parts] + added_parts, repacked)
        os.replace(repacked, package_path)
    except OSError as e:
        raise LocalIOError(f"Cannot repack {package_path.name}: {e}") from e

    return ShrinkResult(
        vectors_found=len(vectors),
        vectors_removed=len(removed_parts),
        rasters_resized=rasters_resized,
        relationships_rewritten=sum(len(ids) for ids in rewritten.values()),
        references_updated=references,
        size_before=size_before,
        size_after=package_path.stat().st_size,
    )


class AssetShrinker(ItemTransformer):
    """Download -> rewrite -> upload for one document"""

    name = "shrink"

    def __init__(
        self,
        store: DocumentStore,
        retrier: Retrier,
        uploader: Uploader,
        scratch_dir: Path,
        target_width: int = 800,
        dry_run: bool = False
    ):
        self.store = store
        self.retrier = retrier
        self.uploader = uploader
        self.scratch_dir = Path(scratch_dir)
        self.target_width = target_width
        self.dry_run = dry_run

    def work_dir_for(self, item: CandidateItem) -> Path:
        """Per-item scratch directory (hash of the remote path)"""
        return self.scratch_dir / hashlib.sha1(item.path.encode('utf-8')).hexdigest()[:12]

    async def transform(self, item: CandidateItem) -> TransformOutcome:
        work_dir = self.work_dir_for(item)
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            local_path = work_dir / item.name

            try:
                await self.retrier.call(
                    lambda: self.store.download_file(item, local_path),
                    f"download {item.name}"
                )
            except PermanentRemoteError as e:
                return Failed(error=f"download failed: {e}")

            try:
                result = shrink_package(local_path, work_dir, self.target_width)
            except UnconvertibleAssetsError as e:
                logger.warning(f"{item.name}: left unchanged, {e}")
                return Skipped(reason=SkipReason.UNCONVERTIBLE_ASSETS, detail=", ".join(e.names))
            except LocalIOError as e:
                logger.error(f"{item.name}: local rewrite failed: {e}")
                return Failed(error=str(e))

            if result is None:
                logger.info(f"{item.name}: no vector images to replace")
                return Skipped(reason=SkipReason.NO_ELIGIBLE_ASSETS)

            saved = max(result.size_before - result.size_after, 0)
            logger.info(
                f"{item.name}: {result.vectors_removed}/{result.vectors_found} vector image(s) removed, "
                f"{result.rasters_resized} raster(s) resized, {result.references_updated} reference(s) updated, "
                f"{format_size(result.size_before)} -> {format_size(result.size_after)}"
            )

            if self.dry_run:
                logger.info(f"[DRY RUN] Would upload {item.path} ({format_size(result.size_after)})")
            else:
                try:
                    await self.uploader.upload(item, local_path)
                except PermanentRemoteError as e:
                    logger.error(f"{item.name}: upload failed, remote file left unchanged: {e}")
                    return Failed(error=str(e))

            return Succeeded(
                bytes_saved=saved,
                units_changed=result.vectors_removed,
                units_total=result.vectors_found,
                size_before=result.size_before,
                size_after=result.size_after,
                dry_run=self.dry_run,
                detail=f"{result.rasters_resized} raster(s) resized",
            )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
