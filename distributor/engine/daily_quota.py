"""
Daily action quota: how many rewarded actions an owner has left today.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, timezone
from typing import Iterable, Optional

from engine.models import LedgerTransaction, TransactionKind, utcnow

MAX_DAILY_ACTIONS = int(os.getenv("MAX_DAILY_ACTIONS", "3"))

LIMITED_KINDS = frozenset({TransactionKind.CLAIM_REWARD})


@dataclass
class DailyQuota:
    action_count:      int
    limit:             int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.action_count)

    @property
    def limit_reached(self) -> bool:
        return self.remaining == 0


def daily_quota(
    transactions: Iterable[LedgerTransaction],
    today: Optional[date] = None,
    limit: int = MAX_DAILY_ACTIONS,
) -> DailyQuota:
    today = today or utcnow().date()
    count = sum(
        1 for tx in transactions
        if tx.kind in LIMITED_KINDS
        and tx.created_at.astimezone(timezone.utc).date() == today
    )
    return DailyQuota(action_count=count, limit=limit)


def remaining_actions(
    transactions: Iterable[LedgerTransaction],
    today: Optional[date] = None,
    limit: int = MAX_DAILY_ACTIONS,
) -> int:
    return daily_quota(transactions, today, limit).remaining
