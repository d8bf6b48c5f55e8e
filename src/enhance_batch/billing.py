import structlog

from enhance_batch.credits import ensure_wallet, grant
from enhance_batch.db import add_notification, connect, now_iso
from enhance_batch.presets import PLAN_MONTHLY_CREDITS, TOPUP_PACKS

logger = structlog.get_logger(__name__)

EVENT_TYPES = {"subscription_renewed", "topup_purchased", "subscription_cancelled"}


class BillingEventError(ValueError):
    pass


def apply_billing_event(
    event_id: str,
    event_type: str,
    user_id: str,
    plan: str | None = None,
    pack: str | None = None,
    reference: str | None = None,
) -> bool:
    """
    Apply the credit effect of a payment-provider event exactly once.

    Returns False when ``event_id`` was already applied.
    """
    if event_type not in EVENT_TYPES:
        raise BillingEventError(f"unsupported event type: {event_type}")
    if event_type == "subscription_renewed" and plan not in PLAN_MONTHLY_CREDITS:
        raise BillingEventError(f"unknown plan: {plan}")
    if event_type == "topup_purchased" and pack not in TOPUP_PACKS:
        raise BillingEventError(f"unknown top-up pack: {pack}")

    reference = reference or event_id
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        cur = conn.execute(
            "INSERT OR IGNORE INTO billing_events (event_id, type, user_id, processed_at) VALUES (?, ?, ?, ?)",
            (event_id, event_type, user_id, now_iso()),
        )
        if cur.rowcount == 0:
            logger.info("billing_event_duplicate", event_id=event_id)
            return False

        ensure_wallet(user_id, conn=conn)
        if event_type == "subscription_renewed":
            credits = PLAN_MONTHLY_CREDITS[plan]
            conn.execute("UPDATE wallets SET plan = ? WHERE user_id = ?", (plan, user_id))
            grant(user_id, credits, "grant", reference=reference, note=f"{plan} plan renewal", conn=conn)
            add_notification(
                user_id,
                "subscription_renewed",
                f"Your {plan} plan renewed",
                body=f"{credits} credits added to your account.",
                conn=conn,
            )
        elif event_type == "topup_purchased":
            credits = TOPUP_PACKS[pack]
            grant(user_id, credits, "topup", reference=reference, note=pack, conn=conn)
            add_notification(
                user_id,
                "credits_added",
                f"{credits} credits added!",
                body="Your top-up is ready to use.",
                conn=conn,
            )
        else:
            credits = PLAN_MONTHLY_CREDITS["free"]
            conn.execute("UPDATE wallets SET plan = 'free' WHERE user_id = ?", (user_id,))
            grant(user_id, credits, "grant", reference=reference, note="free plan after cancellation", conn=conn)
            add_notification(
                user_id,
                "subscription_cancelled",
                "Your subscription was cancelled",
                body=f"You are on the free plan with {credits} monthly credits. Top-up credits stay available.",
                conn=conn,
            )

    logger.info("billing_event_applied", event_id=event_id, event_type=event_type, user_id=user_id)
    return True
