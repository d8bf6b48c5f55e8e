import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import structlog

from enhance_batch.config import settings
from enhance_batch.db import (
    TERMINAL_BATCH_STATUSES,
    claim_batch,
    complete_item,
    fail_item,
    get_batch,
    list_items,
    set_item_external_ref,
    set_item_progress,
    start_item,
)
from enhance_batch.notifier import notify_batch_finished
from enhance_batch.presets import MODE_INSTRUCTIONS, SHAPES
from enhance_batch.provider import (
    EnhancementClient,
    PollCancelledError,
    PollTimeoutError,
    ProviderError,
    ProviderJobFailed,
)
from enhance_batch.storage import BlobStore, output_path

logger = structlog.get_logger(__name__)


def poll_progress(reported: float | None, attempt: int, max_attempts: int) -> int:
    """Map provider progress (0-100) into the item's 40-74 polling band."""
    if reported is None:
        reported = attempt / max_attempts * 100
    reported = max(0.0, min(100.0, float(reported)))
    # Halves round up.
    return min(74, 40 + int(reported * 0.35 + 0.5))


def poll_job(
    client: EnhancementClient,
    external_id: str,
    on_progress: Callable[[int], None] | None = None,
    cancel: threading.Event | None = None,
    max_attempts: int | None = None,
    interval_sec: float | None = None,
) -> str:
    """Poll an external job until it finishes and return its output URL."""
    max_attempts = max_attempts if max_attempts is not None else settings.poll_max_attempts
    interval_sec = interval_sec if interval_sec is not None else settings.poll_interval_sec
    cancel = cancel or threading.Event()

    for attempt in range(max_attempts):
        if cancel.wait(interval_sec):
            raise PollCancelledError(f"polling cancelled for {external_id}")

        try:
            job = client.poll(external_id)
        except ProviderError as exc:
            logger.warning("poll_request_failed", external_id=external_id, attempt=attempt, error=str(exc))
            continue

        if on_progress is not None:
            on_progress(poll_progress(job.progress, attempt, max_attempts))

        if job.status == "completed":
            if not job.output_url:
                raise ProviderJobFailed("provider reported completion without an output url")
            return job.output_url
        if job.status == "failed":
            raise ProviderJobFailed(job.error or "provider processing failed")

    raise PollTimeoutError(f"processing timed out after {max_attempts} polls")


def process_item(
    item: dict,
    batch: dict,
    client: EnhancementClient,
    store: BlobStore,
    cancel: threading.Event | None = None,
) -> bool:
    """Drive one image through the provider. Returns True if it completed."""
    item_id = item["id"]
    log = logger.bind(batch_id=batch["id"], item_id=item_id, position=item["position"])

    if not start_item(item_id):
        log.info("item_skipped", reason="not_queued")
        return False

    try:
        source_url = store.signed_url(item["source_path"], settings.source_url_ttl_sec)
        set_item_progress(item_id, 15)

        dims = SHAPES[batch["shape"]]
        width, height = dims if dims else (None, None)
        external_id = client.submit(
            source_url,
            MODE_INSTRUCTIONS[batch["mode"]],
            width=width,
            height=height,
            fit="cover" if dims else None,
        )
        set_item_external_ref(item_id, external_id)
        set_item_progress(item_id, 40)

        output_url = poll_job(
            client,
            external_id,
            on_progress=lambda pct: set_item_progress(item_id, pct),
            cancel=cancel,
        )
        set_item_progress(item_id, 75)

        data = client.fetch_result(output_url)
        path = output_path(batch["owner_id"], batch["id"], item["position"])
        store.put(path, data, "image/jpeg")
        signed_url = store.signed_url(path, settings.output_url_ttl_sec)
        expires_at = (datetime.now(timezone.utc) + timedelta(seconds=settings.output_url_ttl_sec)).isoformat()
        complete_item(item_id, path, len(data), signed_url, expires_at)
    except Exception as exc:
        log.warning("item_failed", error=str(exc), error_type=type(exc).__name__)
        fail_item(item_id, str(exc))
        return False

    log.info("item_completed", size_bytes=len(data))
    return True


def _run_item(
    item: dict,
    batch: dict,
    client: EnhancementClient,
    store: BlobStore,
    cancel: threading.Event | None,
) -> bool:
    try:
        return process_item(item, batch, client, store, cancel)
    except Exception:
        logger.exception("item_crashed", batch_id=batch["id"], item_id=item["id"])
        return False


def process_batch(
    batch_id: str,
    client: EnhancementClient | None = None,
    store: BlobStore | None = None,
    cancel: threading.Event | None = None,
) -> dict | None:
    """
    Processing phase for a submitted batch.

    Claims the batch, runs every queued item through ``process_item`` on a
    small thread pool, then sends the terminal notification. Returns the
    batch's aggregate counts, or None if the batch does not exist. Calling
    it again for a batch that is already claimed or finished changes
    nothing.
    """
    batch = get_batch(batch_id)
    if not batch:
        return None

    if batch["status"] in TERMINAL_BATCH_STATUSES or not claim_batch(batch_id):
        logger.info("batch_dispatch_ignored", batch_id=batch_id, status=batch["status"])
        return _counts(get_batch(batch_id))

    client = client or EnhancementClient()
    store = store or BlobStore()
    items = list_items(batch_id, status="queued")
    logger.info("batch_started", batch_id=batch_id, items=len(items))

    with ThreadPoolExecutor(max_workers=max(1, settings.item_concurrency)) as pool:
        list(pool.map(lambda it: _run_item(it, batch, client, store, cancel), items))

    unfinished = [i for i in list_items(batch_id) if i["status"] in ("queued", "processing")]
    for item in unfinished:
        try:
            fail_item(item["id"], "item processing did not finish")
        except Exception:
            logger.exception("item_fail_write_failed", batch_id=batch_id, item_id=item["id"])

    final = get_batch(batch_id)
    notify_batch_finished(final)
    logger.info(
        "batch_finished",
        batch_id=batch_id,
        status=final["status"],
        completed=final["completed_count"],
        failed=final["failed_count"],
    )
    return _counts(final)


def _counts(batch: dict) -> dict:
    return {
        "batch_id": batch["id"],
        "status": batch["status"],
        "total": batch["total_items"],
        "completed": batch["completed_count"],
        "failed": batch["failed_count"],
    }
