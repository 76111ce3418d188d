"""
EcoEarn — Claim Orchestrator
============================

End-to-end handling of one claim:

    validate → similarity → persist → route → reward → achievements
             → dispatch → referral

Submitting the same claim id again never redoes finished work. It returns
the persisted state, or resumes an approved claim that stopped before its
reward was recorded. Every write along the way is idempotent, so resuming is
safe.
"""

from __future__ import annotations

import logging
import os
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from engine.achievements import AchievementLedger, milestones_reached
from engine.daily_quota import MAX_DAILY_ACTIONS, remaining_actions
from engine.dispatcher import DistributionDispatcher
from engine.errors import (
    ConcurrencyConflict,
    DuplicateClaim,
    ReconciliationRequired,
    ValidationError,
)
from engine.models import (
    Claim,
    ClaimResult,
    ClaimStatus,
    HumanVerdict,
    LedgerTransaction,
    ReviewDecision,
    ReviewOutcome,
    ReviewStatus,
    RewardBreakdown,
    SettlementRecord,
    SettlementState,
    SettlementStatus,
    ShareKind,
    TransactionKind,
    utcnow,
)
from engine.referrals import ReferralStateMachine
from engine.review_router import ReasonCode, ReviewInputs, ReviewPolicy, route
from engine.review_sink import ReviewSink
from engine.reward_calculator import RewardCalculator, consecutive_day_streak
from engine.similarity import SimilarityPolicy, score_against_history
from engine.store import EngineStore

logger = logging.getLogger("ecoearn.orchestrator")

PLATFORM_FUND_ADDRESS = os.getenv("PLATFORM_FUND_ADDRESS", "")
MAX_CLAIM_AMOUNT      = Decimal(os.getenv("MAX_CLAIM_AMOUNT", "100000"))


def achievement_reference(owner_id: str, kind: str) -> str:
    return f"achievement:{owner_id}:{kind}"


class ClaimOrchestrator:

    def __init__(
        self,
        store: EngineStore,
        dispatcher: DistributionDispatcher,
        review_sink: Optional[ReviewSink] = None,
        referrals: Optional[ReferralStateMachine] = None,
        similarity_policy: Optional[SimilarityPolicy] = None,
        review_policy: Optional[ReviewPolicy] = None,
        calculator: Optional[RewardCalculator] = None,
        platform_address: Optional[str] = PLATFORM_FUND_ADDRESS,
        daily_limit: int = MAX_DAILY_ACTIONS,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.review_sink = review_sink or ReviewSink()
        self.referrals = referrals
        self.similarity_policy = similarity_policy or SimilarityPolicy()
        self.review_policy = review_policy or ReviewPolicy()
        self.calculator = calculator or RewardCalculator()
        self.platform_address = platform_address or None
        self.daily_limit = daily_limit
        self.achievements = AchievementLedger(store)

    # ── Validation & duplicates ────────────────────────────────────────────────
    @staticmethod
    def validate(claim: Claim) -> None:
        if not claim.id or not str(claim.id).strip():
            raise ValidationError("claim id is required", field="id")
        if not claim.owner_id or not str(claim.owner_id).strip():
            raise ValidationError("owner id is required", field="owner_id")
        if not isinstance(claim.occurred_at, date):
            raise ValidationError("occurred_at must be a date", field="occurred_at")
        if claim.occurred_at > utcnow().date() + timedelta(days=1):
            raise ValidationError("occurred_at is in the future", field="occurred_at")
        if claim.amount is not None:
            if not isinstance(claim.amount, Decimal) or not claim.amount.is_finite():
                raise ValidationError("amount must be a finite decimal", field="amount")
            if claim.amount < 0 or claim.amount > MAX_CLAIM_AMOUNT:
                raise ValidationError(f"amount must be between 0 and {MAX_CLAIM_AMOUNT}", field="amount")

    def _raise_if_duplicate(self, claim: Claim, history: List[Claim]) -> None:
        live = [c for c in history if c.review_status != ReviewStatus.REJECTED]
        report = score_against_history(claim, live, self.similarity_policy)
        worst = report.worst
        if worst is not None:
            raise DuplicateClaim(claim.id, worst.prior_claim_id, worst.score, worst.factors)

    # ── Public API ─────────────────────────────────────────────────────────────
    def submit(self, claim: Claim) -> ClaimResult:
        self.validate(claim)

        existing = self.store.get_claim(claim.id)
        if existing is not None:
            return self._replay(existing, claim)

        self._raise_if_duplicate(claim, self.store.list_claims_by_owner(claim.owner_id))

        claim.review_status = ReviewStatus.PENDING
        claim.settlement_state = SettlementState.UNSETTLED
        claim.submitted_at = utcnow()
        if not self.store.create_claim(claim):
            return self._replay(self.store.get_claim(claim.id), claim)

        # A parallel submission of the same receipt under another id may have
        # slipped past the first check; the earlier one wins.
        earlier = [
            c for c in self.store.list_claims_by_owner(claim.owner_id)
            if (c.submitted_at, c.id) < (claim.submitted_at, claim.id)
        ]
        try:
            self._raise_if_duplicate(claim, earlier)
        except DuplicateClaim:
            self.store.update_review_status(claim.id, ReviewStatus.REJECTED, expected=[ReviewStatus.PENDING])
            raise

        logger.info(f"[CLAIM] {claim.id} accepted from {claim.owner_id}")
        return self._decide(claim, human_verdict=None)

    def redecide(self, claim_id: str, verdict: HumanVerdict) -> ClaimResult:
        """A reviewer's verdict re-enters through the same router as submission."""
        claim = self._require(claim_id)
        if claim.settlement_state != SettlementState.UNSETTLED:
            logger.info(f"[CLAIM] {claim_id} settlement already begun; decision is final")
            return self._resume(claim)
        if claim.review_status in (ReviewStatus.APPROVED, ReviewStatus.REJECTED):
            return self._resume(claim)
        return self._decide(claim, human_verdict=verdict)

    def retry_settlement(self, claim_id: str) -> ClaimResult:
        claim = self._require(claim_id)
        breakdown = self.store.get_breakdown(claim_id)
        if claim.review_status != ReviewStatus.APPROVED or breakdown is None:
            raise ValidationError(f"claim {claim_id} has no approved reward to settle", field="claim_id")
        decision = self.store.get_decision(claim_id)
        record = self._settle_claim(claim, breakdown, decision)
        return self._result(self._require(claim_id), ClaimStatus.APPROVED, decision, breakdown, record)

    def resolve_settlement(
        self, reference_id: str, owner_tx_ref: Optional[str], platform_tx_ref: Optional[str]
    ) -> SettlementRecord:
        record = self.dispatcher.resolve_pending(reference_id, owner_tx_ref, platform_tx_ref)
        claim = self.store.get_claim(reference_id)
        breakdown = self.store.get_breakdown(reference_id)
        if claim is not None and breakdown is not None:
            self._sync_settlement_state(claim.id, breakdown)
        return record

    def get_result(self, claim_id: str) -> ClaimResult:
        return self._resume(self._require(claim_id), resume_work=False)

    # ── Decision ───────────────────────────────────────────────────────────────
    def _require(self, claim_id: str) -> Claim:
        claim = self.store.get_claim(claim_id)
        if claim is None:
            raise ValidationError(f"unknown claim {claim_id}", field="claim_id")
        return claim

    def _decide(self, claim: Claim, human_verdict: Optional[HumanVerdict]) -> ClaimResult:
        quota = remaining_actions(self.store.list_transactions(claim.owner_id), limit=self.daily_limit)
        decision = route(
            ReviewInputs(claim=claim, quota_remaining=quota, human_verdict=human_verdict),
            self.review_policy,
        )
        if decision.outcome == ReviewOutcome.AUTO_APPROVE and not self._reserve_quota(claim, human_verdict):
            logger.info(f"[CLAIM] {claim.id} lost the last daily slot for {claim.owner_id}")
            decision = route(
                ReviewInputs(claim=claim, quota_remaining=0, human_verdict=None),
                self.review_policy,
            )

        # The status swap decides who owns the claim; only the winner's decision is persisted.
        status = {
            ReviewOutcome.REJECT:        ReviewStatus.REJECTED,
            ReviewOutcome.MANUAL_REVIEW: ReviewStatus.MANUAL_REVIEW,
            ReviewOutcome.AUTO_APPROVE:  ReviewStatus.APPROVED,
        }[decision.outcome]
        if not self.store.update_review_status(
            claim.id, status,
            expected=[ReviewStatus.PENDING, ReviewStatus.MANUAL_REVIEW],
        ):
            logger.info(f"[CLAIM] {claim.id} decided by a parallel caller; keeping its decision")
            return self._resume(self._require(claim.id))
        self.store.save_decision(decision)

        if decision.outcome == ReviewOutcome.REJECT:
            claim.review_status = ReviewStatus.REJECTED
            return self._result(claim, ClaimStatus.REJECTED, decision, reason=decision.reason_codes[-1])

        if decision.outcome == ReviewOutcome.MANUAL_REVIEW:
            claim.review_status = ReviewStatus.MANUAL_REVIEW
            try:
                self.review_sink.notify(claim, decision)
            except Exception as exc:
                logger.error(f"[CLAIM] review sink failed for {claim.id}: {exc}")
            return self._result(claim, ClaimStatus.REVIEW_PENDING, decision)

        claim.review_status = ReviewStatus.APPROVED
        return self._reward_and_settle(claim, decision)

    def _reserve_quota(self, claim: Claim, human_verdict: Optional[HumanVerdict]) -> bool:
        """Takes a daily slot for the claim. Reviewer approvals are counted but never refused."""
        limit = None if human_verdict == HumanVerdict.APPROVED else self.daily_limit
        return self.store.reserve_daily_action(claim.owner_id, utcnow().date(), claim.id, limit)

    # ── Reward & settlement ────────────────────────────────────────────────────
    def _high_confidence(self, decision: Optional[ReviewDecision]) -> bool:
        if decision is None:
            return False
        if ReasonCode.HUMAN_APPROVED.value in decision.reason_codes:
            return True
        return decision.confidence_used >= self.review_policy.default_threshold

    def _reward_and_settle(self, claim: Claim, decision: ReviewDecision) -> ClaimResult:
        breakdown = self.store.get_breakdown(claim.id)
        if breakdown is None:
            breakdown = self._compute_reward(claim)
            if not self.store.save_breakdown(breakdown):
                breakdown = self.store.get_breakdown(claim.id)

        self.store.append_transaction(LedgerTransaction(
            owner_id=claim.owner_id,
            kind=TransactionKind.CLAIM_REWARD,
            amount=breakdown.owner_share,
            reference_id=claim.id,
            description=f"Reward for claim at {claim.merchant_ref or 'unknown merchant'}",
            dedupe_key=f"claim:{claim.id}:reward",
        ))

        record = self._settle_claim(claim, breakdown, decision)

        kinds = self._achievements_earned_by(claim)
        for kind in kinds:
            self._settle_achievement(claim, kind)

        if self.referrals is not None:
            try:
                outcome = self.referrals.process(claim.owner_id)
                logger.debug(f"[CLAIM] referral check for {claim.owner_id}: {outcome.value}")
            except ReconciliationRequired as exc:
                logger.critical(f"[CLAIM] {exc}")

        result = self._result(self._require(claim.id), ClaimStatus.APPROVED, decision, breakdown, record)
        result.achievements = tuple(kinds)
        return result

    def _achievements_earned_by(self, claim: Claim) -> List[str]:
        """Kinds granted while rewarding this claim, read back from the ledger."""
        prefix = f"achievement:{claim.owner_id}:"
        return [
            t.dedupe_key[len(prefix):]
            for t in self.store.list_transactions(claim.owner_id, TransactionKind.ACHIEVEMENT_REWARD)
            if t.reference_id == claim.id and t.dedupe_key and t.dedupe_key.startswith(prefix)
        ]

    def _compute_reward(self, claim: Claim) -> RewardBreakdown:
        """Breakdown for the claim itself; achievements it unlocks are granted and paid separately."""
        owner = claim.owner_id
        today = utcnow().date()
        history = self.store.list_transactions(owner)
        rewarded = [
            t for t in history
            if t.kind == TransactionKind.CLAIM_REWARD and t.reference_id != claim.id
        ]
        approved = [
            c for c in self.store.list_claims_by_owner(owner)
            if c.review_status == ReviewStatus.APPROVED or c.id == claim.id
        ]
        is_first = len(approved) == 1

        breakdown = self.calculator.calculate(
            claim_id=claim.id,
            amount=claim.amount,
            category=claim.ai_category,
            is_first_claim=is_first,
            streak_days=consecutive_day_streak(rewarded, today),
            payment_method=claim.payment_method,
            card_last_four=claim.card_last_four,
        )
        lifetime = sum((t.amount for t in history), Decimal("0"))
        this_month = sum(
            1 for c in approved
            if (c.submitted_at.year, c.submitted_at.month) == (today.year, today.month)
        )
        kinds = milestones_reached(len(approved), this_month, lifetime, lifetime + breakdown.owner_share)

        for kind in kinds:
            self.achievements.grant(owner, kind, self.calculator.achievement_amount(kind), claim.id)
        return breakdown

    def _settle_claim(
        self,
        claim: Claim,
        breakdown: RewardBreakdown,
        decision: Optional[ReviewDecision],
    ) -> Optional[SettlementRecord]:
        if breakdown.total <= 0:
            self.store.update_settlement_state(claim.id, SettlementState.CONFIRMED)
            return None

        self.store.update_settlement_state(
            claim.id, SettlementState.PENDING,
            expected=[SettlementState.UNSETTLED, SettlementState.PENDING],
        )
        try:
            record = self.dispatcher.dispatch(
                claim.id,
                claim.owner_address,
                breakdown.owner_share,
                self.platform_address,
                breakdown.platform_share,
                high_confidence=self._high_confidence(decision),
                metadata={"kind": "claim", "owner_id": claim.owner_id, "category": claim.ai_category.value},
            )
        except ConcurrencyConflict:
            logger.debug(f"[CLAIM] {claim.id} is being settled by a parallel caller")
            return None

        self._sync_settlement_state(claim.id, breakdown)
        return record

    def _sync_settlement_state(self, claim_id: str, breakdown: RewardBreakdown) -> None:
        confirmed = self.store.confirmed_shares(claim_id)
        needed = [
            share for share, amount in (
                (ShareKind.OWNER, breakdown.owner_share),
                (ShareKind.PLATFORM, breakdown.platform_share),
            ) if amount > 0
        ]
        if all(share in confirmed for share in needed):
            self.store.update_settlement_state(claim_id, SettlementState.CONFIRMED)

    def _settle_achievement(self, claim: Claim, kind: str) -> None:
        owner_share, platform_share = self.calculator.achievement_shares(kind)
        try:
            self.dispatcher.dispatch(
                achievement_reference(claim.owner_id, kind),
                claim.owner_address,
                owner_share,
                self.platform_address,
                platform_share,
                high_confidence=True,
                metadata={"kind": "achievement", "achievement": kind, "owner_id": claim.owner_id},
            )
        except ConcurrencyConflict:
            logger.debug(f"[CLAIM] achievement {kind} for {claim.owner_id} already dispatching")

    # ── Replays ────────────────────────────────────────────────────────────────
    def _replay(self, existing: Claim, submitted: Claim) -> ClaimResult:
        if existing.owner_id != submitted.owner_id:
            raise ValidationError(f"claim id {existing.id} belongs to another owner", field="id")
        logger.info(f"[CLAIM] {existing.id} resubmitted; replaying persisted state")
        return self._resume(existing)

    def _resume(self, claim: Claim, resume_work: bool = True) -> ClaimResult:
        decision = self.store.get_decision(claim.id)
        if claim.review_status == ReviewStatus.REJECTED:
            return self._result(claim, ClaimStatus.REJECTED, decision)
        if claim.review_status in (ReviewStatus.PENDING, ReviewStatus.MANUAL_REVIEW):
            return self._result(claim, ClaimStatus.REVIEW_PENDING, decision)

        breakdown = self.store.get_breakdown(claim.id)
        if resume_work and breakdown is None and decision is not None:
            logger.warning(f"[CLAIM] {claim.id} approved but unrewarded; resuming")
            return self._reward_and_settle(claim, decision)

        records = self.store.list_settlement_records(claim.id)
        confirmed = [r for r in records if r.status == SettlementStatus.CONFIRMED]
        latest = (confirmed or records or [None])[-1]
        return self._result(claim, ClaimStatus.APPROVED, decision, breakdown, latest)

    @staticmethod
    def _result(
        claim: Claim,
        status: ClaimStatus,
        decision: Optional[ReviewDecision],
        breakdown: Optional[RewardBreakdown] = None,
        settlement: Optional[SettlementRecord] = None,
        reason: Optional[str] = None,
    ) -> ClaimResult:
        return ClaimResult(
            claim_id=claim.id,
            status=status,
            decision=decision,
            breakdown=breakdown,
            settlement=settlement,
            settlement_state=claim.settlement_state,
            reason=reason,
        )
