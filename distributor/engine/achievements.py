"""
EcoEarn — Achievement Ledger

One-time bonuses keyed by (owner, kind). The durable store is the authority
and enforces uniqueness; the in-process cache only remembers grants that are
known to exist, so it can never answer "not granted" on its own.
"""

from __future__ import annotations

import logging
import os
import threading
from decimal import Decimal
from typing import List, Optional

from engine.models import AchievementGrant, LedgerTransaction, TransactionKind
from engine.store import LedgerStore

logger = logging.getLogger("ecoearn.achievements")

MONTHLY_RECORD_CLAIMS = int(os.getenv("ACHIEVEMENT_MONTHLY_RECORD_CLAIMS", "20"))
TOKEN_MILESTONE       = Decimal(os.getenv("ACHIEVEMENT_TOKEN_MILESTONE", "100"))

CLAIM_COUNT_MILESTONES = (
    (1, "first_claim"),
    (5, "five_claims"),
    (10, "ten_claims"),
)


def milestones_reached(
    approved_claims: int,
    claims_this_month: int,
    lifetime_before: Decimal,
    lifetime_after: Decimal,
) -> List[str]:
    """Achievement kinds whose condition this claim satisfies (grant still decides)."""
    kinds = [kind for count, kind in CLAIM_COUNT_MILESTONES if approved_claims >= count]
    if claims_this_month >= MONTHLY_RECORD_CLAIMS:
        kinds.append("monthly_record")
    if lifetime_before < TOKEN_MILESTONE <= lifetime_after:
        kinds.append("token_milestone")
    return kinds


def achievement_dedupe_key(owner_id: str, kind: str) -> str:
    return f"achievement:{owner_id}:{kind}"


class AchievementLedger:

    def __init__(self, store: LedgerStore):
        self.store = store
        self._known = set()
        self._known_lock = threading.Lock()

    def _remember(self, owner_id: str, kind: str) -> None:
        with self._known_lock:
            self._known.add((owner_id, kind))

    def was_granted(self, owner_id: str, kind: str) -> bool:
        with self._known_lock:
            if (owner_id, kind) in self._known:
                return True
        if self.store.get_grant(owner_id, kind) is not None:
            self._remember(owner_id, kind)
            return True
        return False

    def grant(
        self,
        owner_id: str,
        kind: str,
        amount: Decimal,
        reference_id: str = "",
    ) -> Optional[AchievementGrant]:
        """Returns the grant if this caller won it, None if it already existed."""
        if self.was_granted(owner_id, kind):
            return None

        key = achievement_dedupe_key(owner_id, kind)
        tx = LedgerTransaction(
            owner_id=owner_id,
            kind=TransactionKind.ACHIEVEMENT_REWARD,
            amount=amount,
            reference_id=reference_id or key,
            description=f"{kind} achievement",
            dedupe_key=key,
        )
        grant = AchievementGrant(owner_id=owner_id, kind=kind, amount=amount, tx_ref=tx.id)

        won = self.store.insert_grant(grant, tx)
        self._remember(owner_id, kind)
        if not won:
            logger.debug(f"[ACHIEVEMENT] {kind} for {owner_id} already granted by a parallel caller")
            return None

        logger.info(f"[ACHIEVEMENT] Granted {kind} (+{amount}) to {owner_id}")
        return grant
