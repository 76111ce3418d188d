"""
EcoEarn — Referral State Machine

    pending ──lock──▶ processing ──settled──▶ rewarded
       ▲                  │
       └──── unlock ──────┘   (settlement failed / not eligible yet)

The lock is a compare-and-set in the store; losers return without touching
anything. Eligibility (referee's first verified claim) is checked only after
the lock is held.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from engine.dispatcher import DistributionDispatcher
from engine.errors import ReconciliationRequired
from engine.models import (
    LedgerTransaction,
    Referral,
    ReferralStatus,
    ReviewStatus,
    SettlementStatus,
    ShareKind,
    TransactionKind,
)
from engine.reward_calculator import split_total
from engine.store import ClaimStore, ReferralStore

logger = logging.getLogger("ecoearn.referrals")

REFERRAL_REWARD = Decimal(os.getenv("REFERRAL_REWARD", "15"))


class ReferralOutcome(str, Enum):
    NO_REFERRAL        = "no_referral"
    NOT_PENDING        = "not_pending"
    LOST_RACE          = "lost_race"
    NOT_FIRST_CLAIM    = "not_first_claim"
    NO_DESTINATION     = "no_destination"
    SETTLEMENT_PENDING = "settlement_pending"
    REWARDED           = "rewarded"


def referral_reference(referral_id: str) -> str:
    return f"referral:{referral_id}"


class ReferralStateMachine:

    def __init__(
        self,
        referrals: ReferralStore,
        claims: ClaimStore,
        dispatcher: DistributionDispatcher,
        platform_address: Optional[str],
        reward_amount: Decimal = REFERRAL_REWARD,
        address_resolver: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.referrals = referrals
        self.claims = claims
        self.dispatcher = dispatcher
        self.platform_address = platform_address
        self.reward_amount = reward_amount
        self.address_resolver = address_resolver

    def _unlock(self, referral: Referral, why: str) -> None:
        self.referrals.transition_referral(referral.id, ReferralStatus.PROCESSING, ReferralStatus.PENDING)
        logger.info(f"[REFERRAL] {referral.id} back to pending: {why}")

    def _destination(self, referral: Referral) -> Optional[str]:
        if referral.referrer_address:
            return referral.referrer_address
        if self.address_resolver is not None:
            return self.address_resolver(referral.referrer_id)
        return None

    def process(self, referee_id: str) -> ReferralOutcome:
        referral = self.referrals.get_referral_by_referee(referee_id)
        if referral is None:
            return ReferralOutcome.NO_REFERRAL
        if referral.status != ReferralStatus.PENDING:
            return ReferralOutcome.NOT_PENDING

        if not self.referrals.transition_referral(
            referral.id, ReferralStatus.PENDING, ReferralStatus.PROCESSING
        ):
            logger.debug(f"[REFERRAL] {referral.id} locked by a parallel caller")
            return ReferralOutcome.LOST_RACE

        try:
            verified = sum(
                1 for c in self.claims.list_claims_by_owner(referee_id)
                if c.review_status == ReviewStatus.APPROVED
            )
            if verified != 1:
                self._unlock(referral, f"referee has {verified} verified claims")
                return ReferralOutcome.NOT_FIRST_CLAIM

            destination = self._destination(referral)
            if not destination:
                self._unlock(referral, "referrer has no payout address")
                return ReferralOutcome.NO_DESTINATION

            reference_id = referral_reference(referral.id)
            owner_share, platform_share = split_total(self.reward_amount)
            record = self.dispatcher.dispatch(
                reference_id,
                destination,
                owner_share,
                self.platform_address,
                platform_share,
                high_confidence=True,
                metadata={"kind": "referral", "referrer_id": referral.referrer_id, "referee_id": referee_id},
            )
        except Exception:
            self._unlock(referral, "processing raised")
            raise

        if record.status != SettlementStatus.CONFIRMED:
            self._unlock(referral, f"settlement {record.status.value} via {record.backend_tier.value}")
            return ReferralOutcome.SETTLEMENT_PENDING

        refs = self.dispatcher.store.confirmed_shares(reference_id)
        transactions = [
            LedgerTransaction(
                owner_id=referral.referrer_id,
                kind=TransactionKind.REFERRAL_REWARD,
                amount=owner_share,
                reference_id=reference_id,
                description=f"Referral reward for inviting {referee_id}",
                tx_ref=refs.get(ShareKind.OWNER),
                dedupe_key=f"{reference_id}:owner",
            ),
            LedgerTransaction(
                owner_id=None,
                kind=TransactionKind.PLATFORM_SHARE,
                amount=platform_share,
                reference_id=reference_id,
                description=f"Platform share of referral {referral.id}",
                tx_ref=refs.get(ShareKind.PLATFORM),
                dedupe_key=f"{reference_id}:platform",
            ),
        ]

        # Value has moved. From here a failed write must not unlock the referral,
        # or the next claim would pay it again.
        try:
            completed = self.referrals.complete_referral_reward(referral.id, transactions)
        except Exception as exc:
            logger.critical(f"[REFERRAL] ❌ {referral.id} paid but not recorded: {exc}")
            raise ReconciliationRequired(reference_id, str(exc), list(refs.values())) from exc
        if not completed:
            logger.critical(f"[REFERRAL] ❌ {referral.id} left processing before completion")
            raise ReconciliationRequired(reference_id, "referral no longer processing", list(refs.values()))

        logger.info(f"[REFERRAL] ✅ {referral.id} rewarded {owner_share} to {referral.referrer_id}")
        return ReferralOutcome.REWARDED
