"""
In-process EngineStore. Every conditional write happens under one RLock, so it
gives the same atomicity guarantees as the Redis store for a single process.
Used for development and tests.
"""

from __future__ import annotations

import copy
import threading
import time
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from engine.models import (
    AchievementGrant,
    Claim,
    LedgerTransaction,
    Referral,
    ReferralStatus,
    ReviewDecision,
    ReviewStatus,
    RewardBreakdown,
    SettlementRecord,
    SettlementState,
    ShareKind,
    TransactionKind,
)
from engine.store import EngineStore


class MemoryStore(EngineStore):

    def __init__(self):
        self._lock = threading.RLock()
        self._claims: Dict[str, Claim] = {}
        self._decisions: Dict[str, ReviewDecision] = {}
        self._breakdowns: Dict[str, RewardBreakdown] = {}
        self._transactions: List[LedgerTransaction] = []
        self._dedupe_keys: set = set()
        self._grants: Dict[Tuple[str, str], AchievementGrant] = {}
        self._referrals: Dict[str, Referral] = {}
        self._records: Dict[str, List[SettlementRecord]] = defaultdict(list)
        self._confirmations: Dict[Tuple[str, ShareKind], str] = {}
        self._locks: Dict[str, Tuple[str, float]] = {}
        self._daily_slots: Dict[Tuple[str, date], set] = defaultdict(set)

    # ── Claims ────────────────────────────────────────────────────────────────
    def get_claim(self, claim_id: str) -> Optional[Claim]:
        with self._lock:
            claim = self._claims.get(claim_id)
            return copy.deepcopy(claim) if claim else None

    def list_claims_by_owner(self, owner_id: str) -> List[Claim]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._claims.values() if c.owner_id == owner_id]

    def create_claim(self, claim: Claim) -> bool:
        with self._lock:
            if claim.id in self._claims:
                return False
            self._claims[claim.id] = copy.deepcopy(claim)
            return True

    def update_review_status(
        self,
        claim_id: str,
        status: ReviewStatus,
        expected: Optional[Iterable[ReviewStatus]] = None,
    ) -> bool:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                return False
            if expected is not None and claim.review_status not in set(expected):
                return False
            claim.review_status = status
            return True

    def update_settlement_state(
        self,
        claim_id: str,
        state: SettlementState,
        expected: Optional[Iterable[SettlementState]] = None,
    ) -> bool:
        with self._lock:
            claim = self._claims.get(claim_id)
            if claim is None:
                return False
            if expected is not None and claim.settlement_state not in set(expected):
                return False
            claim.settlement_state = state
            return True

    def save_decision(self, decision: ReviewDecision) -> None:
        with self._lock:
            self._decisions[decision.claim_id] = decision

    def get_decision(self, claim_id: str) -> Optional[ReviewDecision]:
        with self._lock:
            return self._decisions.get(claim_id)

    def save_breakdown(self, breakdown: RewardBreakdown) -> bool:
        with self._lock:
            if breakdown.claim_id in self._breakdowns:
                return False
            self._breakdowns[breakdown.claim_id] = breakdown
            return True

    def get_breakdown(self, claim_id: str) -> Optional[RewardBreakdown]:
        with self._lock:
            return self._breakdowns.get(claim_id)

    # ── Ledger ────────────────────────────────────────────────────────────────
    def _append_locked(self, tx: LedgerTransaction) -> bool:
        if tx.dedupe_key:
            if tx.dedupe_key in self._dedupe_keys:
                return False
            self._dedupe_keys.add(tx.dedupe_key)
        self._transactions.append(tx)
        return True

    def append_transaction(self, tx: LedgerTransaction) -> bool:
        with self._lock:
            return self._append_locked(tx)

    def list_transactions(
        self, owner_id: str, kind: Optional[TransactionKind] = None
    ) -> List[LedgerTransaction]:
        with self._lock:
            return [
                t for t in self._transactions
                if t.owner_id == owner_id and (kind is None or t.kind == kind)
            ]

    def list_transactions_by_kind(self, kind: TransactionKind) -> List[LedgerTransaction]:
        with self._lock:
            return [t for t in self._transactions if t.kind == kind]

    def insert_grant(self, grant: AchievementGrant, tx: LedgerTransaction) -> bool:
        with self._lock:
            key = (grant.owner_id, grant.kind)
            if key in self._grants:
                return False
            self._grants[key] = grant
            self._append_locked(tx)
            return True

    def get_grant(self, owner_id: str, kind: str) -> Optional[AchievementGrant]:
        with self._lock:
            return self._grants.get((owner_id, kind))

    def reserve_daily_action(
        self, owner_id: str, day: date, claim_id: str, limit: Optional[int]
    ) -> bool:
        with self._lock:
            slots = self._daily_slots[(owner_id, day)]
            if claim_id in slots:
                return True
            if limit is not None and len(slots) >= limit:
                return False
            slots.add(claim_id)
            return True

    # ── Referrals ─────────────────────────────────────────────────────────────
    def create_referral(self, referral: Referral) -> bool:
        with self._lock:
            if referral.id in self._referrals:
                return False
            if any(r.referee_id == referral.referee_id for r in self._referrals.values()):
                return False
            self._referrals[referral.id] = copy.deepcopy(referral)
            return True

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        with self._lock:
            ref = self._referrals.get(referral_id)
            return copy.deepcopy(ref) if ref else None

    def get_referral_by_referee(self, referee_id: str) -> Optional[Referral]:
        with self._lock:
            for ref in self._referrals.values():
                if ref.referee_id == referee_id:
                    return copy.deepcopy(ref)
            return None

    def transition_referral(
        self, referral_id: str, from_status: ReferralStatus, to_status: ReferralStatus
    ) -> bool:
        with self._lock:
            ref = self._referrals.get(referral_id)
            if ref is None or ref.status != from_status:
                return False
            ref.status = to_status
            return True

    def complete_referral_reward(
        self, referral_id: str, transactions: List[LedgerTransaction]
    ) -> bool:
        with self._lock:
            ref = self._referrals.get(referral_id)
            if ref is None or ref.status != ReferralStatus.PROCESSING:
                return False
            ref.status = ReferralStatus.REWARDED
            for tx in transactions:
                self._append_locked(tx)
            return True

    # ── Settlement ────────────────────────────────────────────────────────────
    def add_settlement_record(self, record: SettlementRecord) -> None:
        with self._lock:
            self._records[record.reference_id].append(record)

    def list_settlement_records(self, reference_id: str) -> List[SettlementRecord]:
        with self._lock:
            return list(self._records.get(reference_id, ()))

    def confirm_share(self, reference_id: str, share: ShareKind, tx_ref: str) -> bool:
        with self._lock:
            key = (reference_id, share)
            if key in self._confirmations:
                return False
            self._confirmations[key] = tx_ref
            return True

    def confirmed_shares(self, reference_id: str) -> Dict[ShareKind, str]:
        with self._lock:
            return {
                share: ref for (rid, share), ref in self._confirmations.items()
                if rid == reference_id
            }

    def acquire_dispatch_lock(self, reference_id: str, token: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._lock:
            held = self._locks.get(reference_id)
            if held and held[1] > now:
                return False
            self._locks[reference_id] = (token, now + ttl_seconds)
            return True

    def release_dispatch_lock(self, reference_id: str, token: str) -> None:
        with self._lock:
            held = self._locks.get(reference_id)
            if held and held[0] == token:
                del self._locks[reference_id]
