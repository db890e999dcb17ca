import logging
import uuid
from datetime import datetime
from typing import Optional

from psycopg2.extensions import connection as PGConnection

from models.ledger import Transaction
from schemas.ledger import TransactionUpsert
from utils.database import row_to_model_with_cursor

logger = logging.getLogger(__name__)


def get_transaction_by_external_id(
    conn: PGConnection,
    *,
    user_id: str,
    external_transaction_id: str,
    for_update: bool = False,
) -> Optional[Transaction]:
    """Lookup by the aggregator id; ``for_update`` locks the row until commit."""
    sql = """
        SELECT * FROM transactions
        WHERE user_id = %(user_id)s AND external_transaction_id = %(external_transaction_id)s
    """
    if for_update:
        sql += " FOR UPDATE"
    cur = conn.cursor()
    cur.execute(
        sql,
        {"user_id": user_id, "external_transaction_id": external_transaction_id},
    )
    row = cur.fetchone()
    return row_to_model_with_cursor(row, Transaction, cur) if row else None


def insert_transaction_if_absent(
    conn: PGConnection, *, data: TransactionUpsert, now: datetime
) -> bool:
    """Insert unless (user_id, external_transaction_id) exists; True if inserted."""
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO transactions (
            id, user_id, account_id, external_transaction_id, transaction_date,
            processed_date, amount, currency, description, transaction_type, category,
            merchant_name, balance_after, is_pending, is_deleted, is_active,
            remote_last_update, transaction_metadata, created_at, updated_at
        )
        VALUES (
            %(id)s, %(user_id)s, %(account_id)s, %(external_transaction_id)s,
            %(transaction_date)s, %(processed_date)s, %(amount)s, %(currency)s,
            %(description)s, %(transaction_type)s, %(category)s, %(merchant_name)s,
            %(balance_after)s, %(is_pending)s, %(is_deleted)s, %(is_active)s,
            %(remote_last_update)s, %(transaction_metadata)s, %(now)s, %(now)s
        )
        ON CONFLICT (user_id, external_transaction_id) DO NOTHING
        """,
        {**data.model_dump(), "id": str(uuid.uuid4()), "now": now},
    )
    return cur.rowcount == 1


def update_transaction(
    conn: PGConnection, *, transaction_id: str, data: TransactionUpsert, now: datetime
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE transactions SET
            account_id = %(account_id)s,
            transaction_date = %(transaction_date)s,
            processed_date = %(processed_date)s,
            amount = %(amount)s,
            currency = %(currency)s,
            description = %(description)s,
            transaction_type = %(transaction_type)s,
            category = %(category)s,
            merchant_name = %(merchant_name)s,
            balance_after = %(balance_after)s,
            is_pending = %(is_pending)s,
            is_deleted = %(is_deleted)s,
            is_active = %(is_active)s,
            remote_last_update = %(remote_last_update)s,
            transaction_metadata = %(transaction_metadata)s,
            updated_at = %(now)s
        WHERE id = %(id)s
        """,
        {**data.model_dump(), "id": transaction_id, "now": now},
    )


def count_transactions_for_connection(conn: PGConnection, connection_id: str) -> int:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT COUNT(*)
        FROM transactions t
        JOIN bank_accounts a ON a.id = t.account_id
        WHERE a.connection_id = %(connection_id)s
        """,
        {"connection_id": connection_id},
    )
    row = cur.fetchone()
    return int(row[0]) if row else 0
