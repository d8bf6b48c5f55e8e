import mimetypes
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.responses import Response

from enhance_batch.batches import AllUploadsFailedError, InsufficientCreditsError, SourceImage, submit_batch
from enhance_batch.billing import BillingEventError, apply_billing_event
from enhance_batch.bundles import (
    BundleNotReadyError,
    BundleStorageError,
    NothingToBundleError,
    get_or_build_bundle,
)
from enhance_batch.config import settings
from enhance_batch.credits import ensure_wallet, get_wallet, grant, list_ledger
from enhance_batch.db import (
    delete_batch,
    get_batch,
    init_db,
    list_batches,
    list_items,
    list_notifications,
    mark_notifications_read,
)
from enhance_batch.logging_config import setup_logging
from enhance_batch.presets import MODE_INSTRUCTIONS, SHAPES
from enhance_batch.schemas import (
    AdminGrantRequest,
    BatchResponse,
    BillingEventRequest,
    BundleResponse,
    CreditBalanceResponse,
    ItemResponse,
    SubmitResponse,
    WorkerRequest,
)
from enhance_batch.storage import BlobNotFoundError, BlobStore, BlobStoreError, verify_signature
from enhance_batch.worker import process_batch

setup_logging()
app = FastAPI(title="Batch Image Enhancer", version=settings.app_version)
init_db()


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"app_version": settings.app_version},
        "error": error,
    }


def _require_admin(x_admin_token: str | None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def _require_worker(x_worker_secret: str | None) -> None:
    if not settings.worker_secret:
        raise HTTPException(status_code=500, detail="WORKER_SECRET is not configured")
    if x_worker_secret != settings.worker_secret:
        raise HTTPException(status_code=403, detail="Forbidden")


def _owned_batch(batch_id: str, user_id: str) -> dict:
    batch = get_batch(batch_id)
    if not batch:
        raise HTTPException(status_code=404, detail="Batch not found")
    if batch["owner_id"] != user_id:
        raise HTTPException(status_code=403, detail="You do not own this batch")
    return batch


def _accepted_types() -> set[str]:
    return {t.strip().lower() for t in settings.accepted_types.split(",") if t.strip()}


@app.get("/health")
def health() -> dict:
    return envelope({"service": "batch-image-enhancer"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "batch-image-enhancer", "version": settings.app_version})


@app.post("/v1/batches")
async def create_enhancement_batch(
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
    user_id: str = Form(...),
    mode: str = Form("natural_light"),
    shape: str = Form("AUTO"),
) -> dict:
    if mode not in MODE_INSTRUCTIONS:
        raise HTTPException(status_code=400, detail="Invalid mode")
    if shape not in SHAPES:
        raise HTTPException(status_code=400, detail="Invalid target shape")
    if not files or len(files) > settings.max_files:
        raise HTTPException(status_code=400, detail=f"Submit between 1 and {settings.max_files} images")

    accepted = _accepted_types()
    limit = settings.max_file_mb * 1024 * 1024
    sources: list[SourceImage] = []
    for f in files:
        content_type = (f.content_type or "").lower()
        if content_type not in accepted:
            raise HTTPException(status_code=400, detail=f"Unsupported file type: {content_type or 'unknown'}")
        data = await f.read()
        if len(data) > limit:
            raise HTTPException(status_code=413, detail=f"{f.filename} exceeds {settings.max_file_mb} MB")
        if not data:
            raise HTTPException(status_code=400, detail=f"{f.filename} is empty")
        sources.append(SourceImage(filename=f.filename or "image", content_type=content_type, data=data))

    try:
        result = submit_batch(user_id, sources, mode, shape)
    except InsufficientCreditsError as exc:
        raise HTTPException(status_code=402, detail=str(exc)) from exc
    except AllUploadsFailedError as exc:
        raise HTTPException(status_code=502, detail=f"{exc} (batch {exc.batch_id})") from exc

    background_tasks.add_task(process_batch, result["batch_id"])
    return envelope(SubmitResponse(**result).model_dump())


@app.get("/v1/batches/{batch_id}")
def get_enhancement_batch(batch_id: str, user_id: str = Query(...)) -> dict:
    batch = _owned_batch(batch_id, user_id)
    items = [ItemResponse(**i).model_dump() for i in list_items(batch_id)]
    return envelope({"batch": BatchResponse(**batch).model_dump(), "items": items})


@app.delete("/v1/batches/{batch_id}")
def delete_enhancement_batch(batch_id: str, user_id: str = Query(...)) -> dict:
    batch = _owned_batch(batch_id, user_id)
    if batch["status"] in {"queued", "processing"}:
        raise HTTPException(status_code=409, detail="Batch is still processing")
    store = BlobStore()
    for category in ("uploads", "outputs", "bundles"):
        store.remove_prefix(f"{category}/{batch['owner_id']}/{batch_id}")
    delete_batch(batch_id)
    return envelope({"batch_id": batch_id, "deleted": True})


@app.get("/v1/users/{user_id}/batches")
def list_user_batches(user_id: str, limit: int = Query(50, ge=1, le=200)) -> dict:
    return envelope({"batches": [BatchResponse(**b).model_dump() for b in list_batches(user_id, limit)]})


@app.post("/v1/worker")
def run_worker(payload: WorkerRequest, x_worker_secret: Annotated[str | None, Header()] = None) -> dict:
    _require_worker(x_worker_secret)
    counts = process_batch(payload.batch_id)
    if counts is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return envelope(counts)


@app.post("/v1/batches/{batch_id}/bundle")
def bundle_batch(batch_id: str, user_id: str = Query(...)) -> dict:
    _owned_batch(batch_id, user_id)
    try:
        bundle = get_or_build_bundle(batch_id)
    except BundleNotReadyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except NothingToBundleError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except BundleStorageError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return envelope(BundleResponse(**bundle).model_dump())


@app.get("/v1/blobs/{path:path}")
def download_blob(path: str, expires: int = Query(...), sig: str = Query(...)) -> Response:
    if not verify_signature(path, expires, sig):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    try:
        data = BlobStore().get(path)
    except BlobNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Blob not found") from exc
    except BlobStoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


@app.get("/v1/credits/{user_id}")
def get_credits(user_id: str) -> dict:
    wallet = get_wallet(user_id) or {"user_id": user_id}
    monthly = int(wallet.get("monthly_balance", 0))
    topup = int(wallet.get("topup_balance", 0))
    balance = CreditBalanceResponse(
        user_id=user_id,
        plan=wallet.get("plan", "free"),
        monthly_balance=monthly,
        topup_balance=topup,
        used_this_cycle=int(wallet.get("used_this_cycle", 0)),
        available=monthly + topup,
    ).model_dump()
    return envelope({"balance": balance, "recent_ledger": list_ledger(user_id, limit=20)})


@app.post("/v1/admin/credits/grant")
def admin_grant_credits(payload: AdminGrantRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token)
    if payload.email:
        ensure_wallet(payload.user_id, email=payload.email)
    grant(
        payload.user_id,
        payload.amount,
        payload.source,
        reference=payload.reference,
        note=payload.note,
    )
    wallet = get_wallet(payload.user_id) or {}
    return envelope(
        {
            "user_id": payload.user_id,
            "monthly_balance": int(wallet.get("monthly_balance", 0)),
            "topup_balance": int(wallet.get("topup_balance", 0)),
        }
    )


@app.post("/v1/billing/events")
def billing_event(payload: BillingEventRequest, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
    _require_admin(x_admin_token)
    try:
        applied = apply_billing_event(
            payload.event_id,
            payload.type,
            payload.user_id,
            plan=payload.plan,
            pack=payload.pack,
            reference=payload.reference,
        )
    except BillingEventError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return envelope({"event_id": payload.event_id, "applied": applied})


@app.get("/v1/notifications/{user_id}")
def get_notifications(user_id: str, unread_only: bool = Query(False)) -> dict:
    return envelope({"notifications": list_notifications(user_id, unread_only=unread_only)})


@app.post("/v1/notifications/{user_id}/read")
def read_notifications(user_id: str) -> dict:
    return envelope({"marked_read": mark_notifications_read(user_id)})
