from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from models.aggregator import TransactionWindow
from utils.constants import SYNC_INITIAL_LOOKBACK_DAYS, SYNC_RECOVERY_LOOKBACK_DAYS


@dataclass
class WindowDecision:
    window: TransactionWindow
    reason: str  # 'full_history' | 'incremental' | 'initial_backfill' | 'cursor_missing'
    fallback: bool = False


def select_transaction_window(
    *,
    now: datetime,
    cursor: Optional[datetime],
    local_transaction_count: int,
    full_history: bool = False,
    initial_lookback_days: int = SYNC_INITIAL_LOOKBACK_DAYS,
    recovery_lookback_days: int = SYNC_RECOVERY_LOOKBACK_DAYS,
) -> WindowDecision:
    """First matching rule wins."""
    if full_history:
        return WindowDecision(TransactionWindow.full_history(), "full_history")
    if cursor is not None:
        return WindowDecision(TransactionWindow.since_cursor(cursor), "incremental")
    if local_transaction_count == 0:
        return WindowDecision(
            TransactionWindow.date_range(now - timedelta(days=initial_lookback_days), now),
            "initial_backfill",
        )
    # Data exists but the cursor is gone: re-read a short window rather than everything.
    return WindowDecision(
        TransactionWindow.date_range(now - timedelta(days=recovery_lookback_days), now),
        "cursor_missing",
        fallback=True,
    )
