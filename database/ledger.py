from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from models.ledger import Account, Connection, SyncLog, Transaction, UpsertAction
from schemas.ledger import (
    AccountUpsert,
    ConnectionCreate,
    ConnectionPatch,
    TransactionUpsert,
)


class PersistenceError(Exception):
    """Raised when the store rejects a write"""

    pass


class StoreUnavailableError(PersistenceError):
    """Raised when the store cannot be reached at all"""

    pass


# Decides whether an incoming transaction should overwrite the stored one.
ShouldUpdate = Callable[[Transaction, TransactionUpsert], bool]


class LedgerStore(ABC):
    """Persistence contract for connections, accounts, transactions and sync state.

    Implementations are blocking; async callers should hop to a worker thread.
    Multi-row writes (primary-account switch, conditional transaction upsert)
    must be atomic.
    """

    # Connections

    @abstractmethod
    def list_connections(self, active_only: bool = True) -> List[Connection]:
        pass

    @abstractmethod
    def list_connections_for_user(self, user_id: str) -> List[Connection]:
        pass

    @abstractmethod
    def get_connection(self, connection_id: str) -> Optional[Connection]:
        pass

    @abstractmethod
    def find_connection_by_external_id(
        self, external_connection_id: str, user_id: Optional[str] = None
    ) -> Optional[Connection]:
        pass

    @abstractmethod
    def create_connection(self, data: ConnectionCreate) -> Connection:
        """Insert, or refresh the existing row for (user_id, external_connection_id)."""
        pass

    @abstractmethod
    def update_connection(
        self, connection_id: str, patch: ConnectionPatch
    ) -> Optional[Connection]:
        pass

    # Accounts

    @abstractmethod
    def upsert_account(self, data: AccountUpsert) -> Tuple[Account, bool]:
        """Return the stored account and whether it was created."""
        pass

    @abstractmethod
    def find_account_by_external_id(
        self, user_id: str, external_account_id: str
    ) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self, connection_id: str) -> List[Account]:
        pass

    @abstractmethod
    def set_primary_account(self, user_id: str, account_id: str) -> Optional[Account]:
        pass

    # Transactions

    @abstractmethod
    def find_transaction_by_external_id(
        self, user_id: str, external_transaction_id: str
    ) -> Optional[Transaction]:
        pass

    @abstractmethod
    def upsert_transaction(
        self, data: TransactionUpsert, should_update: ShouldUpdate
    ) -> Tuple[Transaction, UpsertAction]:
        pass

    @abstractmethod
    def count_transactions(self, connection_id: str) -> int:
        pass

    # Sync state

    @abstractmethod
    def get_cursor(self, connection_id: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def set_cursor(self, connection_id: str, cursor: datetime) -> bool:
        """Advance the cursor; return False when it would move backwards."""
        pass

    @abstractmethod
    def set_sync_status(
        self,
        connection_id: str,
        status: str,
        message: Optional[str] = None,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Record a run outcome; last_success_at moves only for success and partial_success."""

    @abstractmethod
    def record_sync_log(self, log: SyncLog) -> None:
        pass

    @abstractmethod
    def list_sync_logs(self, connection_id: str, limit: int = 20) -> List[SyncLog]:
        pass

    # Health

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def ping(self) -> None:
        """Raise StoreUnavailableError when the store cannot be reached."""
        pass
