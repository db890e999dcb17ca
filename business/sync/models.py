from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from business.sync.errors import ItemError
from models.ledger import SyncStatus


@dataclass
class SyncOptions:
    full_history: bool = False
    include_transactions: bool = True  # False: refresh-only run, cursor untouched
    force: bool = False
    refresh_credential: bool = False  # refresh even if not yet expired
    sync_type: str = "manual"  # manual | scheduled | webhook | callback | refresh


@dataclass
class SyncSummary:
    connection_id: str
    sync_type: str
    started_at: datetime
    status: Optional[SyncStatus] = None
    user_id: Optional[str] = None
    finished_at: Optional[datetime] = None
    reason: Optional[str] = None  # why a run was skipped or timed out
    message: Optional[str] = None

    accounts_fetched: int = 0
    accounts_created: int = 0
    accounts_updated: int = 0
    accounts_failed: int = 0
    accounts_enabled: int = 0
    accounts_enable_failed: int = 0

    transactions_fetched: int = 0
    transactions_created: int = 0
    transactions_updated: int = 0
    transactions_unchanged: int = 0
    transactions_skipped: int = 0
    transactions_failed: int = 0

    window: Optional[dict[str, Any]] = None
    window_reason: Optional[str] = None
    window_fallback: bool = False
    cursor_advanced: bool = False
    errors: List[ItemError] = field(default_factory=list)

    @property
    def items_fetched(self) -> int:
        return self.accounts_fetched + self.transactions_fetched

    @property
    def items_failed(self) -> int:
        return self.accounts_failed + self.transactions_failed

    @property
    def items_succeeded(self) -> int:
        return (
            self.accounts_created
            + self.accounts_updated
            + self.transactions_created
            + self.transactions_updated
            + self.transactions_unchanged
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "sync_type": self.sync_type,
            "status": self.status.value if self.status else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "accounts": {
                "fetched": self.accounts_fetched,
                "created": self.accounts_created,
                "updated": self.accounts_updated,
                "failed": self.accounts_failed,
                "enabled": self.accounts_enabled,
                "enable_failed": self.accounts_enable_failed,
            },
            "transactions": {
                "fetched": self.transactions_fetched,
                "created": self.transactions_created,
                "updated": self.transactions_updated,
                "unchanged": self.transactions_unchanged,
                "skipped": self.transactions_skipped,
                "failed": self.transactions_failed,
            },
            "window": self.window,
            "window_reason": self.window_reason,
            "window_fallback": self.window_fallback,
            "cursor_advanced": self.cursor_advanced,
            "errors": [e.to_dict() for e in self.errors],
            **({"reason": self.reason} if self.reason else {}),
            **({"message": self.message} if self.message else {}),
        }


@dataclass
class SyncStats:
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    last_run_at: Optional[datetime] = None
    active_runs: int = 0

    @property
    def success_rate(self) -> float:
        if not self.total_runs:
            return 0.0
        return round(self.successful_runs / self.total_runs * 100, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "active_runs": self.active_runs,
            "success_rate": self.success_rate,
        }
