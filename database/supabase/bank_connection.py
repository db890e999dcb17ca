import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2.extensions import connection as PGConnection

from models.ledger import Connection, SyncStatus
from schemas.ledger import ConnectionCreate
from utils.database import row_to_model_with_cursor

logger = logging.getLogger(__name__)

# Columns a ConnectionPatch may touch
PATCHABLE_COLUMNS = (
    "external_user_ref",
    "bank_name",
    "status",
    "sync_enabled",
    "access_token_encrypted",
    "token_expires_at",
    "last_sync_at",
    "last_sync_status",
    "last_error_message",
)


def list_connections(conn: PGConnection, *, active_only: bool = True) -> List[Connection]:
    cur = conn.cursor()
    if active_only:
        cur.execute(
            """
            SELECT * FROM bank_connections
            WHERE status = %(status)s AND sync_enabled = %(sync_enabled)s
            ORDER BY created_at
            """,
            {"status": "active", "sync_enabled": True},
        )
    else:
        cur.execute("SELECT * FROM bank_connections ORDER BY created_at")
    rows = cur.fetchall()
    return [row_to_model_with_cursor(r, Connection, cur) for r in rows]


def list_connections_for_user(conn: PGConnection, *, user_id: str) -> List[Connection]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM bank_connections WHERE user_id = %(user_id)s ORDER BY created_at",
        {"user_id": user_id},
    )
    rows = cur.fetchall()
    return [row_to_model_with_cursor(r, Connection, cur) for r in rows]


def get_connection_by_id(conn: PGConnection, connection_id: str) -> Optional[Connection]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM bank_connections WHERE id = %(id)s",
        {"id": connection_id},
    )
    row = cur.fetchone()
    return row_to_model_with_cursor(row, Connection, cur) if row else None


def get_connection_by_external_id(
    conn: PGConnection,
    *,
    external_connection_id: str,
    user_id: Optional[str] = None,
) -> Optional[Connection]:
    cur = conn.cursor()
    if user_id:
        cur.execute(
            """
            SELECT * FROM bank_connections
            WHERE external_connection_id = %(external_connection_id)s
              AND user_id = %(user_id)s
            """,
            {"external_connection_id": external_connection_id, "user_id": user_id},
        )
    else:
        cur.execute(
            """
            SELECT * FROM bank_connections
            WHERE external_connection_id = %(external_connection_id)s
            ORDER BY created_at
            """,
            {"external_connection_id": external_connection_id},
        )
    row = cur.fetchone()
    return row_to_model_with_cursor(row, Connection, cur) if row else None


def upsert_connection(
    conn: PGConnection, *, data: ConnectionCreate, now: datetime
) -> Connection:
    """Insert a connection or refresh the one already linked for this user."""
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO bank_connections (
            id, user_id, external_connection_id, external_user_ref, bank_name, status,
            sync_enabled, access_token_encrypted, token_expires_at, created_at, updated_at
        )
        VALUES (
            %(id)s, %(user_id)s, %(external_connection_id)s, %(external_user_ref)s,
            %(bank_name)s, %(status)s, %(sync_enabled)s, %(access_token_encrypted)s,
            %(token_expires_at)s, %(now)s, %(now)s
        )
        ON CONFLICT (user_id, external_connection_id) DO UPDATE SET
            external_user_ref = COALESCE(EXCLUDED.external_user_ref, bank_connections.external_user_ref),
            bank_name = EXCLUDED.bank_name,
            status = EXCLUDED.status,
            sync_enabled = EXCLUDED.sync_enabled,
            access_token_encrypted = COALESCE(EXCLUDED.access_token_encrypted, bank_connections.access_token_encrypted),
            token_expires_at = EXCLUDED.token_expires_at,
            updated_at = EXCLUDED.updated_at
        """,
        {
            **data.model_dump(),
            "id": str(uuid.uuid4()),
            "now": now,
            "status": data.status.value,
        },
    )
    stored = get_connection_by_external_id(
        conn,
        external_connection_id=data.external_connection_id,
        user_id=data.user_id,
    )
    if stored is None:
        raise RuntimeError("Failed to upsert bank connection record")
    return stored


def update_connection_fields(
    conn: PGConnection, connection_id: str, changes: Dict[str, Any], *, now: datetime
) -> int:
    """Write only the given columns; returns the number of rows touched."""
    unknown = set(changes) - set(PATCHABLE_COLUMNS)
    if unknown:
        raise ValueError(f"Cannot patch bank_connections columns: {sorted(unknown)}")
    assignments = [f"{column} = %({column})s" for column in changes]
    assignments.append("updated_at = %(updated_at)s")
    cur = conn.cursor()
    cur.execute(
        f"UPDATE bank_connections SET {', '.join(assignments)} WHERE id = %(id)s",
        {**changes, "updated_at": now, "id": connection_id},
    )
    return cur.rowcount


def advance_sync_cursor(
    conn: PGConnection, *, connection_id: str, cursor: datetime, now: datetime
) -> bool:
    """Move the cursor forward; refuses (returns False) on regression."""
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE bank_connections
        SET sync_cursor = %(cursor)s, updated_at = %(now)s
        WHERE id = %(id)s
          AND (sync_cursor IS NULL OR sync_cursor <= %(cursor)s)
        """,
        {"cursor": cursor, "now": now, "id": connection_id},
    )
    return cur.rowcount == 1


def update_sync_status(
    conn: PGConnection,
    *,
    connection_id: str,
    status: str,
    message: Optional[str],
    synced_at: datetime,
) -> None:
    cur = conn.cursor()
    succeeded = status in (SyncStatus.SUCCESS.value, SyncStatus.PARTIAL_SUCCESS.value)
    cur.execute(
        """
        UPDATE bank_connections
        SET last_sync_status = %(status)s,
            last_error_message = %(message)s,
            last_sync_at = %(synced_at)s,
            last_success_at = COALESCE(%(succeeded_at)s, last_success_at),
            updated_at = %(synced_at)s
        WHERE id = %(id)s
        """,
        {
            "status": status,
            "message": message,
            "synced_at": synced_at,
            "succeeded_at": synced_at if succeeded else None,
            "id": connection_id,
        },
    )
