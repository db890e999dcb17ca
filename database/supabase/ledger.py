import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

import psycopg2

from database.ledger import (
    LedgerStore,
    PersistenceError,
    ShouldUpdate,
    StoreUnavailableError,
)
from database.supabase import account as account_repo
from database.supabase import bank_connection as connection_repo
from database.supabase import sync_log as sync_log_repo
from database.supabase import transaction as transaction_repo
from database.supabase.orm import get_connection
from models.ledger import Account, Connection, SyncLog, Transaction, UpsertAction
from schemas.ledger import (
    AccountUpsert,
    ConnectionCreate,
    ConnectionPatch,
    TransactionUpsert,
)
from utils.constants import DATABASE_URL
from utils.database import utc_now

logger = logging.getLogger(__name__)


class SqlLedgerStore(LedgerStore):
    """LedgerStore over PostgreSQL (psycopg2) or SQLite, one DB transaction per call."""

    def __init__(self, database_url: Optional[str] = None) -> None:
        self.database_url = database_url or DATABASE_URL

    @contextmanager
    def _transaction(self) -> Iterator:
        try:
            conn = get_connection(self.database_url)
        except (psycopg2.Error, sqlite3.Error, RuntimeError) as e:
            logger.error(f"Ledger store unreachable: {e}")
            raise StoreUnavailableError(f"Cannot connect to ledger store: {e}") from e

        try:
            yield conn
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._rollback(conn)
            logger.error(f"Ledger store connection lost: {e}")
            raise StoreUnavailableError(f"Ledger store connection lost: {e}") from e
        except (psycopg2.Error, sqlite3.Error) as e:
            self._rollback(conn)
            logger.error(f"Ledger store rejected write: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            self._rollback(conn)
            raise
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn) -> None:
        try:
            conn.rollback()
        except (psycopg2.Error, sqlite3.Error) as e:
            logger.warning(f"Rollback failed: {e}")

    # Connections

    def list_connections(self, active_only: bool = True) -> List[Connection]:
        with self._transaction() as conn:
            return connection_repo.list_connections(conn, active_only=active_only)

    def list_connections_for_user(self, user_id: str) -> List[Connection]:
        with self._transaction() as conn:
            return connection_repo.list_connections_for_user(conn, user_id=user_id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._transaction() as conn:
            return connection_repo.get_connection_by_id(conn, connection_id)

    def find_connection_by_external_id(
        self, external_connection_id: str, user_id: Optional[str] = None
    ) -> Optional[Connection]:
        with self._transaction() as conn:
            return connection_repo.get_connection_by_external_id(
                conn, external_connection_id=external_connection_id, user_id=user_id
            )

    def create_connection(self, data: ConnectionCreate) -> Connection:
        with self._transaction() as conn:
            return connection_repo.upsert_connection(conn, data=data, now=utc_now())

    def update_connection(
        self, connection_id: str, patch: ConnectionPatch
    ) -> Optional[Connection]:
        changes = patch.changes()
        with self._transaction() as conn:
            if changes:
                touched = connection_repo.update_connection_fields(
                    conn, connection_id, changes, now=utc_now()
                )
                if not touched:
                    return None
            return connection_repo.get_connection_by_id(conn, connection_id)

    # Accounts

    def upsert_account(self, data: AccountUpsert) -> Tuple[Account, bool]:
        with self._transaction() as conn:
            return account_repo.upsert_account(conn, data=data, now=utc_now())

    def find_account_by_external_id(
        self, user_id: str, external_account_id: str
    ) -> Optional[Account]:
        with self._transaction() as conn:
            return account_repo.get_account_by_external_id(
                conn, user_id=user_id, external_account_id=external_account_id
            )

    def list_accounts(self, connection_id: str) -> List[Account]:
        with self._transaction() as conn:
            return account_repo.list_accounts_for_connection(conn, connection_id)

    def set_primary_account(self, user_id: str, account_id: str) -> Optional[Account]:
        now = utc_now()
        with self._transaction() as conn:
            target = account_repo.get_account_by_id(conn, account_id)
            if target is None or target.user_id != user_id:
                return None
            account_repo.clear_primary_accounts(conn, user_id=user_id, now=now)
            account_repo.mark_primary_account(
                conn, user_id=user_id, account_id=account_id, now=now
            )
            return account_repo.get_account_by_id(conn, account_id)

    # Transactions

    def find_transaction_by_external_id(
        self, user_id: str, external_transaction_id: str
    ) -> Optional[Transaction]:
        with self._transaction() as conn:
            return transaction_repo.get_transaction_by_external_id(
                conn, user_id=user_id, external_transaction_id=external_transaction_id
            )

    def upsert_transaction(
        self, data: TransactionUpsert, should_update: ShouldUpdate
    ) -> Tuple[Transaction, UpsertAction]:
        now = utc_now()
        with self._transaction() as conn:
            inserted = transaction_repo.insert_transaction_if_absent(
                conn, data=data, now=now
            )
            # The unique key guarantees the row exists now; lock it for the decision.
            existing = transaction_repo.get_transaction_by_external_id(
                conn,
                user_id=data.user_id,
                external_transaction_id=data.external_transaction_id,
                for_update=not inserted,
            )
            if existing is None:
                raise PersistenceError(
                    f"Transaction {data.external_transaction_id} vanished during upsert"
                )
            if inserted:
                return existing, UpsertAction.CREATED
            if not should_update(existing, data):
                return existing, UpsertAction.UNCHANGED
            transaction_repo.update_transaction(
                conn, transaction_id=existing.id, data=data, now=now
            )
            updated = transaction_repo.get_transaction_by_external_id(
                conn,
                user_id=data.user_id,
                external_transaction_id=data.external_transaction_id,
            )
            return updated, UpsertAction.UPDATED

    def count_transactions(self, connection_id: str) -> int:
        with self._transaction() as conn:
            return transaction_repo.count_transactions_for_connection(conn, connection_id)

    # Sync state

    def get_cursor(self, connection_id: str) -> Optional[datetime]:
        connection = self.get_connection(connection_id)
        return connection.sync_cursor if connection else None

    def set_cursor(self, connection_id: str, cursor: datetime) -> bool:
        with self._transaction() as conn:
            advanced = connection_repo.advance_sync_cursor(
                conn, connection_id=connection_id, cursor=cursor, now=utc_now()
            )
        if not advanced:
            logger.warning(
                f"Refused to move sync cursor of connection {connection_id} back to {cursor.isoformat()}"
            )
        return advanced

    def set_sync_status(
        self,
        connection_id: str,
        status: str,
        message: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        with self._transaction() as conn:
            connection_repo.update_sync_status(
                conn,
                connection_id=connection_id,
                status=status,
                message=message,
                synced_at=synced_at or utc_now(),
            )

    def record_sync_log(self, log: SyncLog) -> None:
        with self._transaction() as conn:
            sync_log_repo.insert_sync_log(conn, log=log)

    def list_sync_logs(self, connection_id: str, limit: int = 20) -> List[SyncLog]:
        with self._transaction() as conn:
            return sync_log_repo.list_sync_logs(
                conn, connection_id=connection_id, limit=limit
            )

    # Health

    def counts(self) -> Dict[str, int]:
        with self._transaction() as conn:
            return sync_log_repo.count_rows(conn)

    def ping(self) -> None:
        with self._transaction() as conn:
            cur = conn.cursor()
            cur.execute("SELECT 1")
            cur.fetchone()
