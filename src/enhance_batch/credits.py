"""
Prepaid credit wallet and its append-only ledger.

Every balance change goes through this module. Each mutation reads the
wallet and appends its ledger entry inside one ``BEGIN IMMEDIATE``
transaction, so replaying a user's entries in id order always reproduces
the wallet balance.
"""

import sqlite3

import structlog

from enhance_batch.db import connect, now_iso

logger = structlog.get_logger(__name__)

GRANT_SOURCES = {"grant", "topup"}


def ensure_wallet(
    user_id: str,
    email: str | None = None,
    email_notifications: bool | None = None,
    conn: sqlite3.Connection | None = None,
) -> None:
    ts = now_iso()
    sql = """
        INSERT INTO wallets (user_id, email, email_notifications, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
          email = COALESCE(excluded.email, wallets.email),
          email_notifications = CASE WHEN ? IS NULL THEN wallets.email_notifications
                                     ELSE excluded.email_notifications END,
          updated_at = excluded.updated_at
    """
    flag = None if email_notifications is None else int(email_notifications)
    params = (user_id, email, 1 if flag is None else flag, ts, ts, flag)
    if conn is not None:
        conn.execute(sql, params)
        return
    with connect() as own:
        own.execute(sql, params)
        own.commit()


def get_wallet(user_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM wallets WHERE user_id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def available(user_id: str) -> int:
    wallet = get_wallet(user_id)
    if not wallet:
        return 0
    return int(wallet["monthly_balance"]) + int(wallet["topup_balance"])


def list_ledger(user_id: str, limit: int = 20) -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM ledger_entries WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [dict(r) for r in rows]


def ledger_total(user_id: str) -> int:
    with connect() as conn:
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total FROM ledger_entries WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    return int(row["total"])


def _append_entry(
    conn: sqlite3.Connection,
    user_id: str,
    amount: int,
    monthly_delta: int,
    topup_delta: int,
    source: str,
    reference: str | None,
    note: str | None,
) -> None:
    row = conn.execute(
        "SELECT monthly_balance + topup_balance AS balance FROM wallets WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    conn.execute(
        """
        INSERT INTO ledger_entries (
          user_id, amount, monthly_delta, topup_delta, balance_after, source, reference, note, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, amount, monthly_delta, topup_delta, int(row["balance"]), source, reference, note, now_iso()),
    )


def reserve_and_charge(user_id: str, amount: int, reference: str | None = None) -> bool:
    """
    Deduct ``amount`` credits, monthly balance first, then top-up.

    Returns False without touching the wallet or ledger when the user cannot
    cover the amount.
    """
    if amount <= 0:
        raise ValueError("amount must be > 0")
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        wallet = conn.execute(
            "SELECT monthly_balance, topup_balance FROM wallets WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if not wallet or wallet["monthly_balance"] + wallet["topup_balance"] < amount:
            logger.info("charge_rejected", user_id=user_id, amount=amount)
            return False

        deduct_monthly = min(amount, int(wallet["monthly_balance"]))
        deduct_topup = amount - deduct_monthly
        conn.execute(
            """
            UPDATE wallets
            SET monthly_balance = monthly_balance - ?,
                topup_balance = topup_balance - ?,
                used_this_cycle = used_this_cycle + ?,
                updated_at = ?
            WHERE user_id = ?
            """,
            (deduct_monthly, deduct_topup, amount, now_iso(), user_id),
        )
        _append_entry(conn, user_id, -amount, -deduct_monthly, -deduct_topup, "charge", reference, None)
    logger.info("credits_charged", user_id=user_id, amount=amount, reference=reference)
    return True


def _expire_monthly(conn: sqlite3.Connection, user_id: str, reference: str | None) -> int:
    """Zero the monthly balance, recording what was left as an ``expire`` entry."""
    row = conn.execute("SELECT monthly_balance FROM wallets WHERE user_id = ?", (user_id,)).fetchone()
    left = int(row["monthly_balance"])
    if left > 0:
        conn.execute(
            "UPDATE wallets SET monthly_balance = 0, updated_at = ? WHERE user_id = ?",
            (now_iso(), user_id),
        )
        _append_entry(conn, user_id, -left, -left, 0, "expire", reference, "monthly credits expired")
    return left


def _grant(
    conn: sqlite3.Connection,
    user_id: str,
    amount: int,
    source: str,
    reference: str | None,
    note: str | None,
) -> None:
    ensure_wallet(user_id, conn=conn)
    ts = now_iso()
    if source == "grant":
        # Monthly credits never roll over into the next cycle.
        expired = _expire_monthly(conn, user_id, reference)
        conn.execute(
            "UPDATE wallets SET monthly_balance = ?, used_this_cycle = 0, updated_at = ? WHERE user_id = ?",
            (amount, ts, user_id),
        )
        _append_entry(conn, user_id, amount, amount, 0, source, reference, note)
        if expired:
            logger.info("monthly_credits_expired", user_id=user_id, amount=expired, reference=reference)
    else:
        conn.execute(
            "UPDATE wallets SET topup_balance = topup_balance + ?, updated_at = ? WHERE user_id = ?",
            (amount, ts, user_id),
        )
        _append_entry(conn, user_id, amount, 0, amount, source, reference, note)


def grant(
    user_id: str,
    amount: int,
    source: str,
    reference: str | None = None,
    note: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> None:
    """
    Add credits. ``grant`` starts a new cycle: whatever monthly balance is
    left expires and is replaced by ``amount``. ``topup`` adds to the
    non-expiring top-up balance.
    """
    if amount <= 0:
        raise ValueError("amount must be > 0")
    if source not in GRANT_SOURCES:
        raise ValueError(f"unsupported grant source: {source}")
    if conn is not None:
        _grant(conn, user_id, amount, source, reference, note)
    else:
        with connect() as own:
            own.execute("BEGIN IMMEDIATE")
            _grant(own, user_id, amount, source, reference, note)
    logger.info("credits_granted", user_id=user_id, amount=amount, source=source, reference=reference)


def refund(user_id: str, amount: int, reference: str, note: str | None = None) -> bool:
    """
    Give back credits charged under ``reference``.

    Credits return to the balances the charge drew from. Refunds under one
    reference never exceed what was charged under it. A refund with no
    matching charge, or one that would exceed it, is ignored and returns
    False.
    """
    if amount <= 0:
        raise ValueError("amount must be > 0")
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        already = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS refunded FROM ledger_entries WHERE user_id = ? AND reference = ? AND source = 'refund'",
            (user_id, reference),
        ).fetchone()
        charge = conn.execute(
            """
            SELECT COALESCE(SUM(-monthly_delta), 0) AS monthly, COALESCE(SUM(-topup_delta), 0) AS topup
            FROM ledger_entries WHERE user_id = ? AND reference = ? AND source = 'charge'
            """,
            (user_id, reference),
        ).fetchone()
        charged = int(charge["monthly"]) + int(charge["topup"])
        refunded = int(already["refunded"])
        if refunded + amount > charged:
            logger.warning(
                "refund_skipped", user_id=user_id, reference=reference, amount=amount, charged=charged, refunded=refunded
            )
            return False

        # Unwind in reverse of the charge order: top-up first, then monthly.
        topup_left = max(0, int(charge["topup"]) - refunded)
        to_topup = min(amount, topup_left)
        to_monthly = amount - to_topup

        ensure_wallet(user_id, conn=conn)
        conn.execute(
            """
            UPDATE wallets
            SET monthly_balance = monthly_balance + ?,
                topup_balance = topup_balance + ?,
                used_this_cycle = MAX(0, used_this_cycle - ?),
                updated_at = ?
            WHERE user_id = ?
            """,
            (to_monthly, to_topup, amount, now_iso(), user_id),
        )
        _append_entry(conn, user_id, amount, to_monthly, to_topup, "refund", reference, note)
    logger.info("credits_refunded", user_id=user_id, amount=amount, reference=reference)
    return True
