from dataclasses import dataclass
from pathlib import PurePath
from uuid import uuid4

import structlog

from enhance_batch.credits import available, refund, reserve_and_charge
from enhance_batch.db import add_item, create_batch, get_batch, update_batch
from enhance_batch.notifier import notify_batch_finished
from enhance_batch.presets import EXTENSIONS, MODE_INSTRUCTIONS, SHAPES
from enhance_batch.storage import BlobStore, BlobStoreError, upload_path

logger = structlog.get_logger(__name__)


class SubmissionError(RuntimeError):
    pass


class InsufficientCreditsError(SubmissionError):
    def __init__(self, available_credits: int, required: int) -> None:
        super().__init__(f"Insufficient credits. You have {available_credits}, need {required}.")
        self.available_credits = available_credits
        self.required = required


class AllUploadsFailedError(SubmissionError):
    def __init__(self, batch_id: str) -> None:
        super().__init__("All uploads failed. Credits refunded.")
        self.batch_id = batch_id


@dataclass
class SourceImage:
    filename: str
    content_type: str
    data: bytes


def _extension(source: SourceImage) -> str:
    ext = EXTENSIONS.get(source.content_type)
    if ext:
        return ext
    suffix = PurePath(source.filename).suffix.lower().lstrip(".")
    return suffix or "jpg"


def submit_batch(
    owner_id: str,
    sources: list[SourceImage],
    mode: str,
    shape: str,
    store: BlobStore | None = None,
) -> dict:
    """
    Charge for and persist a new batch.

    Credits are reserved for every requested image before the batch row
    exists. Sources that fail to store are dropped and their credits handed
    back, so the batch ends up charged for exactly the items it holds. When
    nothing could be stored the batch is marked failed, fully refunded, and
    ``AllUploadsFailedError`` is raised.

    Processing is not started here; the caller dispatches ``process_batch``.
    """
    if not sources:
        raise ValueError("at least one source image is required")
    if mode not in MODE_INSTRUCTIONS:
        raise ValueError(f"unknown mode: {mode}")
    if shape not in SHAPES:
        raise ValueError(f"unknown shape: {shape}")

    store = store or BlobStore()
    batch_id = str(uuid4())
    requested = len(sources)

    if not reserve_and_charge(owner_id, requested, reference=batch_id):
        raise InsufficientCreditsError(available(owner_id), requested)

    try:
        create_batch(batch_id, owner_id, mode, shape, total_items=requested, credits_charged=requested)
    except Exception:
        refund(owner_id, requested, reference=batch_id, note="batch creation failed")
        raise

    stored = 0
    for position, source in enumerate(sources, start=1):
        path = upload_path(owner_id, batch_id, position, _extension(source))
        try:
            store.put(path, source.data, source.content_type)
        except BlobStoreError as exc:
            logger.warning("source_store_failed", batch_id=batch_id, position=position, error=str(exc))
            continue
        add_item(str(uuid4()), batch_id, owner_id, position, path, source.filename)
        stored += 1

    if stored == 0:
        update_batch(
            batch_id,
            status="failed",
            total_items=0,
            credits_charged=0,
            error="All uploads failed. Credits refunded.",
        )
        refund(owner_id, requested, reference=batch_id, note="all uploads failed")
        notify_batch_finished(get_batch(batch_id))
        logger.error("batch_ingest_failed", batch_id=batch_id, owner_id=owner_id, requested=requested)
        raise AllUploadsFailedError(batch_id)

    if stored < requested:
        update_batch(batch_id, total_items=stored, credits_charged=stored)
        refund(owner_id, requested - stored, reference=batch_id, note="partial upload failure")

    logger.info("batch_created", batch_id=batch_id, owner_id=owner_id, items=stored, requested=requested)
    return {"batch_id": batch_id, "credits_charged": stored}
