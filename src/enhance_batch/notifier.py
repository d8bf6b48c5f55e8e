import httpx
import structlog

from enhance_batch.config import settings
from enhance_batch.credits import get_wallet
from enhance_batch.db import add_notification

logger = structlog.get_logger(__name__)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def notify_batch_finished(batch: dict) -> None:
    """Emit the terminal in-app notification for a batch and, if anything succeeded, the email."""
    completed = int(batch["completed_count"])
    failed = int(batch["failed_count"])

    if completed > 0:
        notif_type = "job_completed"
        title = f"{_plural(completed, 'photo')} enhanced!"
    else:
        notif_type = "job_failed"
        title = "Enhancement failed"
    body = f"{_plural(failed, 'image')} could not be processed." if failed else batch.get("error")

    add_notification(
        batch["owner_id"],
        notif_type,
        title,
        body=body,
        cta_url=f"/batches/{batch['id']}",
        batch_id=batch["id"],
    )
    logger.info("batch_notified", batch_id=batch["id"], completed=completed, failed=failed)

    if completed > 0:
        try:
            send_completion_email(batch["owner_id"], completed, batch["id"])
        except httpx.HTTPError as exc:
            logger.error("email_send_failed", batch_id=batch["id"], error=str(exc))


def send_completion_email(user_id: str, count: int, batch_id: str) -> bool:
    wallet = get_wallet(user_id)
    if not wallet or not wallet.get("email") or not wallet.get("email_notifications"):
        return False
    if not settings.email_webhook_url:
        logger.info("email_skipped", user_id=user_id, batch_id=batch_id, reason="no_email_webhook")
        return False

    noun = "photo is" if count == 1 else "photos are"
    payload = {
        "to": wallet["email"],
        "subject": f"Your {count} enhanced {noun} ready!",
        "text": (
            f"Your {_plural(count, 'enhanced photo')} "
            f"{'has' if count == 1 else 'have'} been processed and "
            f"{'is' if count == 1 else 'are'} ready to download: "
            f"{settings.app_url.rstrip('/')}/batches/{batch_id}"
        ),
    }
    with httpx.Client(timeout=10) as client:
        r = client.post(settings.email_webhook_url, json=payload)
        r.raise_for_status()
    logger.info("email_sent", user_id=user_id, batch_id=batch_id)
    return True
