import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from enhance_batch.config import settings

TERMINAL_BATCH_STATUSES = ("completed", "failed", "cancelled")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _expires_at() -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=settings.retention_hours)).isoformat()


def connect() -> sqlite3.Connection:
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(settings.database_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    with connect() as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS wallets (
              user_id TEXT PRIMARY KEY,
              email TEXT,
              email_notifications INTEGER NOT NULL DEFAULT 1,
              plan TEXT NOT NULL DEFAULT 'free',
              monthly_balance INTEGER NOT NULL DEFAULT 0 CHECK (monthly_balance >= 0),
              topup_balance INTEGER NOT NULL DEFAULT 0 CHECK (topup_balance >= 0),
              used_this_cycle INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_entries (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              amount INTEGER NOT NULL,
              monthly_delta INTEGER NOT NULL DEFAULT 0,
              topup_delta INTEGER NOT NULL DEFAULT 0,
              balance_after INTEGER NOT NULL,
              source TEXT NOT NULL,
              reference TEXT,
              note TEXT,
              created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_entries(user_id, id)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS batches (
              id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              mode TEXT NOT NULL,
              shape TEXT NOT NULL,
              total_items INTEGER NOT NULL DEFAULT 0,
              completed_count INTEGER NOT NULL DEFAULT 0,
              failed_count INTEGER NOT NULL DEFAULT 0,
              status TEXT NOT NULL,
              credits_charged INTEGER NOT NULL DEFAULT 0,
              error TEXT,
              created_at TEXT NOT NULL,
              started_at TEXT,
              completed_at TEXT,
              updated_at TEXT NOT NULL,
              expires_at TEXT NOT NULL,
              CHECK (completed_count + failed_count <= total_items)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_batches_owner ON batches(owner_id, created_at)")

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
              id TEXT PRIMARY KEY,
              batch_id TEXT NOT NULL REFERENCES batches(id) ON DELETE CASCADE,
              owner_id TEXT NOT NULL,
              position INTEGER NOT NULL,
              source_path TEXT NOT NULL,
              source_filename TEXT NOT NULL,
              output_path TEXT,
              status TEXT NOT NULL DEFAULT 'queued',
              progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
              external_ref TEXT,
              signed_url TEXT,
              signed_url_expires_at TEXT,
              size_bytes INTEGER,
              error TEXT,
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE (batch_id, position)
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS bundles (
              batch_id TEXT PRIMARY KEY REFERENCES batches(id) ON DELETE CASCADE,
              owner_id TEXT NOT NULL,
              storage_path TEXT NOT NULL,
              signed_url TEXT NOT NULL,
              signed_url_expires_at TEXT NOT NULL,
              size_bytes INTEGER NOT NULL,
              item_count INTEGER NOT NULL,
              created_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              type TEXT NOT NULL,
              title TEXT NOT NULL,
              body TEXT,
              cta_url TEXT,
              batch_id TEXT,
              is_read INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS billing_events (
              event_id TEXT PRIMARY KEY,
              type TEXT NOT NULL,
              user_id TEXT NOT NULL,
              processed_at TEXT NOT NULL
            )
            """
        )

        conn.commit()


def create_batch(batch_id: str, owner_id: str, mode: str, shape: str, total_items: int, credits_charged: int) -> None:
    ts = now_iso()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO batches (
              id, owner_id, mode, shape, total_items, status, credits_charged,
              created_at, updated_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, 'queued', ?, ?, ?, ?)
            """,
            (batch_id, owner_id, mode, shape, total_items, credits_charged, ts, ts, _expires_at()),
        )
        conn.commit()


def get_batch(batch_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
    return dict(row) if row else None


def list_batches(owner_id: str, limit: int = 50) -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM batches WHERE owner_id = ? ORDER BY created_at DESC LIMIT ?",
            (owner_id, limit),
        ).fetchall()
    return [dict(r) for r in rows]


def update_batch(batch_id: str, **fields: Any) -> None:
    assignments = [f"{name} = ?" for name in fields]
    values: list[Any] = list(fields.values())
    assignments.append("updated_at = ?")
    values.append(now_iso())
    values.append(batch_id)
    with connect() as conn:
        conn.execute(f"UPDATE batches SET {', '.join(assignments)} WHERE id = ?", tuple(values))
        conn.commit()


def claim_batch(batch_id: str) -> bool:
    """Move a queued batch to processing. Only one caller can win the claim."""
    ts = now_iso()
    with connect() as conn:
        cur = conn.execute(
            """
            UPDATE batches SET status = 'processing', started_at = ?, updated_at = ?
            WHERE id = ? AND status = 'queued'
            """,
            (ts, ts, batch_id),
        )
        conn.commit()
    return cur.rowcount == 1


def delete_batch(batch_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM batches WHERE id = ?", (batch_id,))
        conn.commit()


def list_expired_batches() -> list[dict]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM batches WHERE expires_at < ? AND status NOT IN ('queued', 'processing')",
            (now_iso(),),
        ).fetchall()
    return [dict(r) for r in rows]


def add_item(
    item_id: str,
    batch_id: str,
    owner_id: str,
    position: int,
    source_path: str,
    source_filename: str,
) -> None:
    ts = now_iso()
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO items (id, batch_id, owner_id, position, source_path, source_filename, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item_id, batch_id, owner_id, position, source_path, source_filename, ts, ts),
        )
        conn.commit()


def get_item(item_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
    return dict(row) if row else None


def list_items(batch_id: str, status: str | None = None) -> list[dict]:
    sql = "SELECT * FROM items WHERE batch_id = ?"
    params: list[Any] = [batch_id]
    if status is not None:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY position"
    with connect() as conn:
        rows = conn.execute(sql, tuple(params)).fetchall()
    return [dict(r) for r in rows]


def start_item(item_id: str) -> bool:
    with connect() as conn:
        cur = conn.execute(
            "UPDATE items SET status = 'processing', progress = 5, updated_at = ? WHERE id = ? AND status = 'queued'",
            (now_iso(), item_id),
        )
        conn.commit()
    return cur.rowcount == 1


def set_item_progress(item_id: str, progress: int) -> None:
    progress = max(0, min(100, int(progress)))
    with connect() as conn:
        conn.execute(
            """
            UPDATE items SET progress = MAX(progress, ?), updated_at = ?
            WHERE id = ? AND status = 'processing'
            """,
            (progress, now_iso(), item_id),
        )
        conn.commit()


def set_item_external_ref(item_id: str, external_ref: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE items SET external_ref = ?, updated_at = ? WHERE id = ?",
            (external_ref, now_iso(), item_id),
        )
        conn.commit()


def _finish_item(item_id: str, status: str, fields: dict[str, Any]) -> bool:
    # The item guard and the counter bump share one write transaction, and the
    # counter CASE reads pre-update column values, so concurrent finishes on
    # the same batch cannot lose an increment or complete it twice.
    ts = now_iso()
    counter = "completed_count" if status == "completed" else "failed_count"
    assignments = ", ".join(f"{name} = ?" for name in fields)
    with connect() as conn:
        conn.execute("BEGIN IMMEDIATE")
        row = conn.execute("SELECT batch_id FROM items WHERE id = ?", (item_id,)).fetchone()
        if not row:
            return False
        cur = conn.execute(
            f"""
            UPDATE items SET status = ?, {assignments}, updated_at = ?
            WHERE id = ? AND status NOT IN ('completed', 'failed')
            """,
            (status, *fields.values(), ts, item_id),
        )
        if cur.rowcount == 0:
            return False
        conn.execute(
            f"""
            UPDATE batches
               SET {counter} = {counter} + 1,
                   status = CASE
                     WHEN completed_count + failed_count + 1 = total_items THEN 'completed'
                     ELSE status
                   END,
                   completed_at = CASE
                     WHEN completed_count + failed_count + 1 = total_items THEN ?
                     ELSE completed_at
                   END,
                   updated_at = ?
             WHERE id = ?
            """,
            (ts, ts, row["batch_id"]),
        )
    return True


def complete_item(
    item_id: str,
    output_path: str,
    size_bytes: int,
    signed_url: str,
    signed_url_expires_at: str,
) -> bool:
    """Mark an item completed. Returns False if it was already terminal."""
    return _finish_item(
        item_id,
        "completed",
        {
            "progress": 100,
            "output_path": output_path,
            "size_bytes": size_bytes,
            "signed_url": signed_url,
            "signed_url_expires_at": signed_url_expires_at,
            "error": None,
        },
    )


def fail_item(item_id: str, error: str) -> bool:
    """Mark an item failed. Returns False if it was already terminal."""
    return _finish_item(item_id, "failed", {"error": error})


def get_bundle(batch_id: str) -> dict | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM bundles WHERE batch_id = ?", (batch_id,)).fetchone()
    return dict(row) if row else None


def upsert_bundle(
    batch_id: str,
    owner_id: str,
    storage_path: str,
    signed_url: str,
    signed_url_expires_at: str,
    size_bytes: int,
    item_count: int,
) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO bundles (
              batch_id, owner_id, storage_path, signed_url, signed_url_expires_at,
              size_bytes, item_count, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(batch_id) DO UPDATE SET
              storage_path = excluded.storage_path,
              signed_url = excluded.signed_url,
              signed_url_expires_at = excluded.signed_url_expires_at,
              size_bytes = excluded.size_bytes,
              item_count = excluded.item_count,
              created_at = excluded.created_at
            """,
            (batch_id, owner_id, storage_path, signed_url, signed_url_expires_at, size_bytes, item_count, now_iso()),
        )
        conn.commit()


def add_notification(
    user_id: str,
    notif_type: str,
    title: str,
    body: str | None = None,
    cta_url: str | None = None,
    batch_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> None:
    sql = """
        INSERT INTO notifications (user_id, type, title, body, cta_url, batch_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """
    params = (user_id, notif_type, title, body, cta_url, batch_id, now_iso())
    if conn is not None:
        conn.execute(sql, params)
        return
    with connect() as own:
        own.execute(sql, params)
        own.commit()


def list_notifications(user_id: str, unread_only: bool = False, limit: int = 50) -> list[dict]:
    sql = "SELECT * FROM notifications WHERE user_id = ?"
    if unread_only:
        sql += " AND is_read = 0"
    sql += " ORDER BY id DESC LIMIT ?"
    with connect() as conn:
        rows = conn.execute(sql, (user_id, limit)).fetchall()
    return [dict(r) for r in rows]


def mark_notifications_read(user_id: str) -> int:
    with connect() as conn:
        cur = conn.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,))
        conn.commit()
    return cur.rowcount
