from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from models.ledger import Connection, ConnectionStatus, SyncStatus
from utils.constants import (
    SYNC_INTERVAL_SECONDS,
    SYNC_MIN_INTERVAL_SECONDS,
    SYNC_STALE_AFTER_SECONDS,
)


@dataclass
class SyncDecision:
    should_sync: bool
    reason: str
    next_allowed_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_sync": self.should_sync,
            "reason": self.reason,
            "next_allowed_at": self.next_allowed_at.isoformat() if self.next_allowed_at else None,
        }


def is_stale(
    connection: Connection,
    now: datetime,
    stale_after_seconds: int = SYNC_STALE_AFTER_SECONDS,
) -> bool:
    """Stale means no successful sync within the window; failed attempts do not count."""
    if connection.last_success_at is None:
        return True
    return now - connection.last_success_at >= timedelta(seconds=stale_after_seconds)


def evaluate_sync_need(
    connection: Connection,
    now: datetime,
    *,
    force: bool = False,
    min_interval_seconds: int = SYNC_MIN_INTERVAL_SECONDS,
    sync_interval_seconds: int = SYNC_INTERVAL_SECONDS,
    stale_after_seconds: int = SYNC_STALE_AFTER_SECONDS,
) -> SyncDecision:
    """Decide whether an on-demand sync should go ahead."""
    if connection.status != ConnectionStatus.ACTIVE or not connection.sync_enabled:
        return SyncDecision(False, "inactive")
    if force:
        return SyncDecision(True, "forced")
    if connection.last_sync_at is None:
        return SyncDecision(True, "initial")

    next_allowed_at = connection.last_sync_at + timedelta(seconds=min_interval_seconds)
    if now < next_allowed_at:
        return SyncDecision(False, "rate_limited", next_allowed_at)
    if connection.last_sync_status == SyncStatus.FAILED.value:
        return SyncDecision(True, "retry_failed")
    if is_stale(connection, now, stale_after_seconds):
        return SyncDecision(True, "stale")
    due_at = connection.last_sync_at + timedelta(seconds=sync_interval_seconds)
    if now < due_at:
        return SyncDecision(False, "not_needed", due_at)
    return SyncDecision(True, "due")
