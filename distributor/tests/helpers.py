"""
Shared factories and a scriptable settlement backend for the engine tests.
"""

import itertools
import os
import sys
import threading
import time
from datetime import date, datetime, timezone
from decimal import Decimal

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.backends import SettlementBackend, SettlementResult
from engine.models import BackendTier, Claim, ClaimCategory, LedgerTransaction, TransactionKind

OWNER_ADDR    = "0x1111111111111111111111111111111111111111"
PLATFORM_ADDR = "0x2222222222222222222222222222222222222222"

_ids = itertools.count(1)


def make_claim(**overrides) -> Claim:
    n = next(_ids)
    fields = dict(
        id=f"claim-{n}",
        owner_id="owner-1",
        merchant_ref="Goodwill",
        amount=Decimal("25.00"),
        occurred_at=date.today(),
        media_ref=f"media/receipt-{n}.jpg",
        ai_confidence=0.95,
        ai_category=ClaimCategory.PRE_OWNED,
        raw_ai_flags=frozenset(),
        owner_address=OWNER_ADDR,
    )
    fields.update(overrides)
    return Claim(**fields)


def make_tx(owner_id: str, day: date, kind=TransactionKind.CLAIM_REWARD, amount="5") -> LedgerTransaction:
    return LedgerTransaction(
        owner_id=owner_id,
        kind=kind,
        amount=Decimal(amount),
        reference_id=f"ref-{next(_ids)}",
        created_at=datetime(day.year, day.month, day.day, 12, tzinfo=timezone.utc),
    )


class FakeBackend(SettlementBackend):
    """
    mode:
      ok     — every settle succeeds
      fail   — returns success=False
      raise  — raises RuntimeError
      slow   — sleeps ``delay`` then succeeds
    """

    def __init__(self, tier=BackendTier.TREASURY_POOL, mode="ok", delay=0.0, available=True,
                 fail_shares=()):
        self.tier = tier
        self.mode = mode
        self.delay = delay
        self._available = available
        self.fail_shares = set(fail_shares)
        self.calls = []
        self._lock = threading.Lock()
        self._n = itertools.count(1)

    def available(self, high_confidence: bool) -> bool:
        return self._available

    def settle(self, destination, amount, metadata):
        with self._lock:
            self.calls.append((destination, amount, dict(metadata)))
            n = next(self._n)
        if self.mode == "raise":
            raise RuntimeError(f"{self.tier.value} node unreachable")
        if self.mode == "slow":
            time.sleep(self.delay)
        if self.mode == "fail" or metadata.get("share") in self.fail_shares:
            return SettlementResult(False, None, "insufficient allowance")
        return SettlementResult(True, f"0x{self.tier.value}-{n}")
