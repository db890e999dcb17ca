from typing import Dict, List

from psycopg2.extensions import connection as PGConnection

from models.ledger import SyncLog
from utils.database import row_to_model_with_cursor

COUNTED_TABLES = ("bank_connections", "bank_accounts", "transactions", "sync_logs")


def insert_sync_log(conn: PGConnection, *, log: SyncLog) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO sync_logs (
            id, user_id, connection_id, sync_type, status, started_at, completed_at,
            items_processed, items_succeeded, items_failed, error_message, sync_metadata
        )
        VALUES (
            %(id)s, %(user_id)s, %(connection_id)s, %(sync_type)s, %(status)s,
            %(started_at)s, %(completed_at)s, %(items_processed)s, %(items_succeeded)s,
            %(items_failed)s, %(error_message)s, %(sync_metadata)s
        )
        """,
        log.model_dump(),
    )


def list_sync_logs(conn: PGConnection, *, connection_id: str, limit: int = 20) -> List[SyncLog]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM sync_logs
        WHERE connection_id = %(connection_id)s
        ORDER BY started_at DESC
        LIMIT %(limit)s
        """,
        {"connection_id": connection_id, "limit": limit},
    )
    rows = cur.fetchall()
    return [row_to_model_with_cursor(r, SyncLog, cur) for r in rows]


def count_rows(conn: PGConnection) -> Dict[str, int]:
    cur = conn.cursor()
    counts: Dict[str, int] = {}
    for table in COUNTED_TABLES:
        cur.execute(f"SELECT COUNT(*) FROM {table}")
        counts[table] = int(cur.fetchone()[0])
    return counts
