"""
Download-all bundles.

A bundle is a zip of every completed output in a batch. It is built on the
first request, stored under ``bundles/{owner}/{batch}/bundle.zip`` and
remembered in the ``bundles`` table. Later requests reuse the stored
signed URL until it is within ``BUNDLE_REUSE_MARGIN_SEC`` of expiring.
"""

import io
import re
import zipfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import PurePath

import structlog

from enhance_batch.config import settings
from enhance_batch.db import get_batch, get_bundle, list_items, upsert_bundle
from enhance_batch.storage import BlobStore, BlobStoreError, bundle_path

logger = structlog.get_logger(__name__)

ARCHIVE_FOLDER = "Enhanced-Photos"


class BundleError(RuntimeError):
    pass


class BundleNotReadyError(BundleError):
    pass


class NothingToBundleError(BundleError):
    pass


class BundleStorageError(BundleError):
    pass


def bundle_filename(batch_id: str) -> str:
    return f"enhanced-batch-{batch_id[:8]}.zip"


def archive_name(position: int, original_filename: str) -> str:
    stem = PurePath(original_filename).stem
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", stem).strip("._") or "image"
    return f"{position:02d}_{stem[:80]}_enhanced.jpg"


def _is_reusable(bundle: dict | None, now: datetime) -> bool:
    if not bundle or not bundle.get("signed_url"):
        return False
    expires = datetime.fromisoformat(bundle["signed_url_expires_at"])
    return expires > now + timedelta(seconds=settings.bundle_reuse_margin_sec)


def _fetch_outputs(items: list[dict], store: BlobStore) -> list[tuple[dict, bytes]]:
    size = max(1, settings.bundle_fetch_batch_size)
    fetched: list[tuple[dict, bytes]] = []

    def _load(item: dict) -> tuple[dict, bytes | None]:
        try:
            return item, store.get(item["output_path"])
        except BlobStoreError as exc:
            logger.warning("bundle_item_missing", item_id=item["id"], error=str(exc))
            return item, None

    with ThreadPoolExecutor(max_workers=size) as pool:
        for start in range(0, len(items), size):
            for item, data in pool.map(_load, items[start : start + size]):
                if data is not None:
                    fetched.append((item, data))
    return fetched


def build_archive(entries: list[tuple[dict, bytes]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
        for item, data in entries:
            zf.writestr(f"{ARCHIVE_FOLDER}/{archive_name(item['position'], item['source_filename'])}", data)
    return buf.getvalue()


def get_or_build_bundle(batch_id: str, store: BlobStore | None = None, now: datetime | None = None) -> dict:
    batch = get_batch(batch_id)
    if not batch:
        raise BundleNotReadyError("batch not found")
    if batch["status"] != "completed":
        raise BundleNotReadyError("batch is not completed yet")

    now = now or datetime.now(timezone.utc)
    existing = get_bundle(batch_id)
    if _is_reusable(existing, now):
        logger.info("bundle_cache_hit", batch_id=batch_id)
        return {"signed_url": existing["signed_url"], "filename": bundle_filename(batch_id)}

    items = list_items(batch_id, status="completed")
    if not items:
        raise NothingToBundleError("no completed images to bundle")

    store = store or BlobStore()
    entries = _fetch_outputs(items, store)
    if not entries:
        raise NothingToBundleError("no completed image outputs could be read")

    archive = build_archive(entries)
    path = bundle_path(batch["owner_id"], batch_id)
    ttl = settings.bundle_url_ttl_sec
    try:
        store.put(path, archive, "application/zip")
        signed_url = store.signed_url(path, ttl)
    except BlobStoreError as exc:
        logger.error("bundle_store_failed", batch_id=batch_id, error=str(exc))
        raise BundleStorageError(f"failed to store bundle: {exc}") from exc

    upsert_bundle(
        batch_id,
        batch["owner_id"],
        storage_path=path,
        signed_url=signed_url,
        signed_url_expires_at=(now + timedelta(seconds=ttl)).isoformat(),
        size_bytes=len(archive),
        item_count=len(entries),
    )
    logger.info("bundle_built", batch_id=batch_id, items=len(entries), size_bytes=len(archive))
    return {"signed_url": signed_url, "filename": bundle_filename(batch_id)}
