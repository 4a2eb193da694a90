"""
Export of curated favorites.

Layout inside the ZIP:

    LOOKCODE/
      front_full/LOOKCODE_front_full_01.png
      back_full/LOOKCODE_back_full_01.png
      ...
"""

import io
import logging
import math
import re
import zipfile
from collections import defaultdict
from dataclasses import dataclass
from typing import Optional

import httpx
from PIL import Image, ImageOps
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NothingToExport
from ..core.storage import LOCAL_URL_PREFIX, StorageBackend, get_storage
from ..models.project import Look
from ..models.repose import ReposeBatchItem, ReposeOutput
from . import batches, curation
from .shot_types import SHOT_TYPE_FOLDER_NAMES, ShotType, resolve_shot_type

logger = logging.getLogger(__name__)

CONTACT_SHEET_COLS = 5
CONTACT_SHEET_CELL = 400
CONTACT_SHEET_GAP = 8
CONTACT_SHEET_BACKGROUND = "#e8e6e1"


@dataclass
class ExportEntry:
    look_code: str
    shot_type: str
    folder: str
    rank: int
    filename: str
    url: str
    output_id: str

    @property
    def path(self) -> str:
        return f"{self.look_code}/{self.folder}/{self.filename}"


def normalize_look_code(look: Optional[Look], look_id: Optional[str]) -> str:
    raw = (look.look_code or look.name) if look else None
    if not raw:
        return f"LOOK_{(look_id or 'UNKNOWN')[:6]}".upper()
    return re.sub(r"\s+", "_", raw.strip()).upper()


async def build_export_structure(db: AsyncSession, batch_id: str) -> list[ExportEntry]:
    await batches.get_batch(db, batch_id)
    favorites = await curation.favorites_for_export(db, batch_id)
    if not favorites:
        return []

    item_ids = {f.batch_item_id for f in favorites}
    result = await db.execute(select(ReposeBatchItem).where(ReposeBatchItem.id.in_(item_ids)))
    items = {item.id: item for item in result.scalars().all()}

    look_ids = {item.look_id for item in items.values() if item.look_id}
    looks = {}
    if look_ids:
        result = await db.execute(select(Look).where(Look.id.in_(look_ids)))
        looks = {look.id: look for look in result.scalars().all()}

    grouped: dict[tuple[str, str], list[tuple[ReposeOutput, ShotType]]] = defaultdict(list)
    for output in favorites:
        item = items.get(output.batch_item_id)
        look_id = (item.look_id or item.id) if item else output.batch_item_id
        look_code = normalize_look_code(looks.get(look_id), look_id)
        shot_type = resolve_shot_type(output.shot_type, output.slot) or ShotType.FRONT_FULL
        grouped[(look_code, SHOT_TYPE_FOLDER_NAMES[shot_type])].append((output, shot_type))

    # Ranks repeat across a look's items; files are numbered per folder
    entries = []
    for look_code, folder in sorted(grouped):
        members = sorted(grouped[(look_code, folder)], key=lambda m: (m[0].favorite_rank, m[0].sequence))
        for number, (output, shot_type) in enumerate(members, start=1):
            entries.append(ExportEntry(
                look_code=look_code,
                shot_type=shot_type.value,
                folder=folder,
                rank=output.favorite_rank,
                filename=f"{look_code}_{folder}_{number:02d}.png",
                url=output.result_url,
                output_id=output.id,
            ))
    return entries


async def fetch_image(
    url: str, client: httpx.AsyncClient, storage: Optional[StorageBackend] = None
) -> bytes:
    """Local-storage URLs are read from disk; everything else over HTTP."""
    if url.startswith(LOCAL_URL_PREFIX):
        data = await (storage or get_storage()).read(url[len(LOCAL_URL_PREFIX):])
        if data is None:
            raise FileNotFoundError(url)
        return data
    resp = await client.get(url)
    resp.raise_for_status()
    return resp.content


async def export_zip(
    db: AsyncSession,
    batch_id: str,
    client: Optional[httpx.AsyncClient] = None,
    storage: Optional[StorageBackend] = None,
) -> tuple[bytes, int]:
    """Returns (zip bytes, number of images written). Images that fail to download are skipped."""
    entries = await build_export_structure(db, batch_id)
    if not entries:
        raise NothingToExport("No favorites selected for export")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0), follow_redirects=True)
    buffer = io.BytesIO()
    written = 0
    try:
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
            for entry in entries:
                try:
                    data = await fetch_image(entry.url, client, storage)
                except (httpx.HTTPError, OSError) as e:
                    logger.warning("Export: skipping %s (%s)", entry.path, e)
                    continue
                zf.writestr(entry.path, data)
                written += 1
    finally:
        if owns_client:
            await client.aclose()

    logger.info("Export for batch %s: %d/%d images", batch_id, written, len(entries))
    return buffer.getvalue(), written


def build_contact_sheet(
    images: list[bytes],
    cols: int = CONTACT_SHEET_COLS,
    cell: int = CONTACT_SHEET_CELL,
    gap: int = CONTACT_SHEET_GAP,
    background: str = CONTACT_SHEET_BACKGROUND,
) -> bytes:
    """Grid of images, each scaled to cover its square cell. Returns PNG bytes."""
    if not images:
        raise NothingToExport("No images for contact sheet")

    cols = max(1, min(cols, len(images)))
    rows = math.ceil(len(images) / cols)
    width = cols * cell + (cols + 1) * gap
    height = rows * cell + (rows + 1) * gap

    sheet = Image.new("RGB", (width, height), background)
    for index, data in enumerate(images):
        with Image.open(io.BytesIO(data)) as img:
            tile = ImageOps.fit(img.convert("RGB"), (cell, cell), Image.Resampling.LANCZOS)
        row, col = divmod(index, cols)
        sheet.paste(tile, (gap + col * (cell + gap), gap + row * (cell + gap)))

    output = io.BytesIO()
    sheet.save(output, format="PNG")
    return output.getvalue()


async def contact_sheet_for_batch(
    db: AsyncSession,
    batch_id: str,
    client: Optional[httpx.AsyncClient] = None,
    storage: Optional[StorageBackend] = None,
    **layout,
) -> bytes:
    entries = await build_export_structure(db, batch_id)
    if not entries:
        raise NothingToExport("No favorites selected for export")

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0), follow_redirects=True)
    images = []
    try:
        for entry in entries:
            try:
                images.append(await fetch_image(entry.url, client, storage))
            except (httpx.HTTPError, OSError) as e:
                logger.warning("Contact sheet: skipping %s (%s)", entry.path, e)
    finally:
        if owns_client:
            await client.aclose()

    return build_contact_sheet(images, **layout)
