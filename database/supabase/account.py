import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from psycopg2.extensions import connection as PGConnection

from models.ledger import Account
from schemas.ledger import AccountUpsert
from utils.database import row_to_model_with_cursor

logger = logging.getLogger(__name__)


def get_account_by_id(conn: PGConnection, account_id: str) -> Optional[Account]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM bank_accounts WHERE id = %(id)s", {"id": account_id})
    row = cur.fetchone()
    return row_to_model_with_cursor(row, Account, cur) if row else None


def get_account_by_external_id(
    conn: PGConnection, *, user_id: str, external_account_id: str
) -> Optional[Account]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM bank_accounts
        WHERE user_id = %(user_id)s AND external_account_id = %(external_account_id)s
        """,
        {"user_id": user_id, "external_account_id": external_account_id},
    )
    row = cur.fetchone()
    return row_to_model_with_cursor(row, Account, cur) if row else None


def list_accounts_for_connection(conn: PGConnection, connection_id: str) -> List[Account]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT * FROM bank_accounts
        WHERE connection_id = %(connection_id)s
        ORDER BY created_at, external_account_id
        """,
        {"connection_id": connection_id},
    )
    rows = cur.fetchall()
    return [row_to_model_with_cursor(r, Account, cur) for r in rows]


def upsert_account(
    conn: PGConnection, *, data: AccountUpsert, now: datetime
) -> Tuple[Account, bool]:
    """Insert the account or overwrite every mutable field; last fetch wins."""
    params = {**data.model_dump(), "id": str(uuid.uuid4()), "now": now}
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO bank_accounts (
            id, user_id, connection_id, external_account_id, account_name, account_number,
            iban, bic, account_type, currency, balance, available_balance, bank_name,
            disabled, account_metadata, created_at, updated_at
        )
        VALUES (
            %(id)s, %(user_id)s, %(connection_id)s, %(external_account_id)s, %(account_name)s,
            %(account_number)s, %(iban)s, %(bic)s, %(account_type)s, %(currency)s,
            %(balance)s, %(available_balance)s, %(bank_name)s, %(disabled)s,
            %(account_metadata)s, %(now)s, %(now)s
        )
        ON CONFLICT (user_id, external_account_id) DO NOTHING
        """,
        params,
    )
    created = cur.rowcount == 1
    if not created:
        cur.execute(
            """
            UPDATE bank_accounts SET
                connection_id = %(connection_id)s,
                account_name = %(account_name)s,
                account_number = %(account_number)s,
                iban = %(iban)s,
                bic = %(bic)s,
                account_type = %(account_type)s,
                currency = %(currency)s,
                balance = %(balance)s,
                available_balance = %(available_balance)s,
                bank_name = %(bank_name)s,
                disabled = %(disabled)s,
                account_metadata = %(account_metadata)s,
                updated_at = %(now)s
            WHERE user_id = %(user_id)s AND external_account_id = %(external_account_id)s
            """,
            params,
        )
    account = get_account_by_external_id(
        conn, user_id=data.user_id, external_account_id=data.external_account_id
    )
    if account is None:
        raise RuntimeError("Failed to upsert account record")
    return account, created


def clear_primary_accounts(conn: PGConnection, *, user_id: str, now: datetime) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE bank_accounts SET is_primary = %(is_primary)s, updated_at = %(now)s
        WHERE user_id = %(user_id)s AND is_primary = %(was_primary)s
        """,
        {"is_primary": False, "was_primary": True, "now": now, "user_id": user_id},
    )


def mark_primary_account(
    conn: PGConnection, *, user_id: str, account_id: str, now: datetime
) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE bank_accounts SET is_primary = %(is_primary)s, updated_at = %(now)s
        WHERE id = %(id)s AND user_id = %(user_id)s
        """,
        {"is_primary": True, "now": now, "id": account_id, "user_id": user_id},
    )
    return cur.rowcount == 1
