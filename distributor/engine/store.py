"""
EcoEarn — Durable store contracts.

Every read-then-write the engine needs is expressed here as one conditional
call so an implementation can make it atomic (a lock in memory, SET NX or
WATCH/MULTI in Redis). Callers never read a value and then write based on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Iterable, List, Optional

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


class ClaimStore(ABC):

    @abstractmethod
    def get_claim(self, claim_id: str) -> Optional[Claim]: ...

    @abstractmethod
    def list_claims_by_owner(self, owner_id: str) -> List[Claim]: ...

    @abstractmethod
    def create_claim(self, claim: Claim) -> bool:
        """Insert if absent. False means a claim with this id already exists."""

    @abstractmethod
    def update_review_status(
        self,
        claim_id: str,
        status: ReviewStatus,
        expected: Optional[Iterable[ReviewStatus]] = None,
    ) -> bool:
        """Set review_status, only if the current value is in ``expected`` (when given)."""

    @abstractmethod
    def update_settlement_state(
        self,
        claim_id: str,
        state: SettlementState,
        expected: Optional[Iterable[SettlementState]] = None,
    ) -> bool: ...

    @abstractmethod
    def save_decision(self, decision: ReviewDecision) -> None: ...

    @abstractmethod
    def get_decision(self, claim_id: str) -> Optional[ReviewDecision]: ...

    @abstractmethod
    def save_breakdown(self, breakdown: RewardBreakdown) -> bool:
        """Insert if absent; the first breakdown for a claim is the one paid."""

    @abstractmethod
    def get_breakdown(self, claim_id: str) -> Optional[RewardBreakdown]: ...


class LedgerStore(ABC):

    @abstractmethod
    def append_transaction(self, tx: LedgerTransaction) -> bool:
        """Append. When ``tx.dedupe_key`` is already present nothing is written and False is returned."""

    @abstractmethod
    def list_transactions(
        self, owner_id: str, kind: Optional[TransactionKind] = None
    ) -> List[LedgerTransaction]: ...

    @abstractmethod
    def list_transactions_by_kind(self, kind: TransactionKind) -> List[LedgerTransaction]: ...

    @abstractmethod
    def insert_grant(self, grant: AchievementGrant, tx: LedgerTransaction) -> bool:
        """Atomically record a grant and its bonus transaction, unique per (owner, kind)."""

    @abstractmethod
    def get_grant(self, owner_id: str, kind: str) -> Optional[AchievementGrant]: ...

    @abstractmethod
    def reserve_daily_action(
        self, owner_id: str, day: date, claim_id: str, limit: Optional[int]
    ) -> bool:
        """Take one of the owner's slots for ``day``. Idempotent per claim id.

        Returns False once ``limit`` distinct claims hold a slot. ``limit=None``
        always records the slot.
        """


class ReferralStore(ABC):

    @abstractmethod
    def create_referral(self, referral: Referral) -> bool:
        """Insert. False when the id or the referee already has a referral."""

    @abstractmethod
    def get_referral(self, referral_id: str) -> Optional[Referral]: ...

    @abstractmethod
    def get_referral_by_referee(self, referee_id: str) -> Optional[Referral]: ...

    @abstractmethod
    def transition_referral(
        self, referral_id: str, from_status: ReferralStatus, to_status: ReferralStatus
    ) -> bool:
        """Compare-and-set. Exactly one of N concurrent callers gets True."""

    @abstractmethod
    def complete_referral_reward(
        self, referral_id: str, transactions: List[LedgerTransaction]
    ) -> bool:
        """processing→rewarded plus every transaction, as one unit."""


class SettlementStore(ABC):

    @abstractmethod
    def add_settlement_record(self, record: SettlementRecord) -> None: ...

    @abstractmethod
    def list_settlement_records(self, reference_id: str) -> List[SettlementRecord]: ...

    @abstractmethod
    def confirm_share(self, reference_id: str, share: ShareKind, tx_ref: str) -> bool:
        """Claim the single confirmation slot for a share. False if already taken."""

    @abstractmethod
    def confirmed_shares(self, reference_id: str) -> Dict[ShareKind, str]: ...

    @abstractmethod
    def acquire_dispatch_lock(self, reference_id: str, token: str, ttl_seconds: float) -> bool: ...

    @abstractmethod
    def release_dispatch_lock(self, reference_id: str, token: str) -> None: ...


class EngineStore(ClaimStore, LedgerStore, ReferralStore, SettlementStore, ABC):
    """Everything the orchestrator needs, behind one handle."""
