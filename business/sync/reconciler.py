from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Tuple

from database.ledger import LedgerStore
from models.ledger import Account, Transaction, UpsertAction
from schemas.ledger import AccountUpsert, TransactionUpsert
from utils.constants import TRANSACTION_CONFLICT_POLICY

logger = logging.getLogger(__name__)


class ConflictPolicy(str, Enum):
    # Overwrite when the remote timestamp is newer or any tracked field differs
    NEWER_OR_DIFFERENT = "newer_or_different"
    # Overwrite only when the remote timestamp is newer (or the stored one is missing)
    STRICT_TIMESTAMP = "strict_timestamp"


def _money_differs(a: Optional[float], b: Optional[float]) -> bool:
    if a is None or b is None:
        return a is not b
    return round(a, 2) != round(b, 2)


def should_update_transaction(
    existing: Transaction,
    incoming: TransactionUpsert,
    policy: ConflictPolicy = ConflictPolicy.NEWER_OR_DIFFERENT,
) -> bool:
    if existing.remote_last_update is None:
        return True
    if (
        incoming.remote_last_update is not None
        and incoming.remote_last_update > existing.remote_last_update
    ):
        return True
    if policy == ConflictPolicy.STRICT_TIMESTAMP:
        return False

    return (
        existing.is_pending != incoming.is_pending
        or existing.is_deleted != incoming.is_deleted
        or existing.is_active != incoming.is_active
        or _money_differs(existing.balance_after, incoming.balance_after)
        or _money_differs(existing.amount, incoming.amount)
        or existing.description != incoming.description
    )


class EntityReconciler:
    """Idempotent merge of fetched entities into the ledger."""

    def __init__(
        self,
        store: LedgerStore,
        policy: ConflictPolicy | str = TRANSACTION_CONFLICT_POLICY,
    ) -> None:
        self.store = store
        self.policy = ConflictPolicy(policy)

    def reconcile_account(self, data: AccountUpsert) -> Tuple[Account, bool]:
        # Accounts are overwritten wholesale: last fetch wins.
        return self.store.upsert_account(data)

    def reconcile_transaction(
        self, data: TransactionUpsert
    ) -> Tuple[Transaction, UpsertAction]:
        return self.store.upsert_transaction(
            data, lambda existing, incoming: should_update_transaction(
                existing, incoming, self.policy
            )
        )
