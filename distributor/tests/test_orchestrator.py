"""
EcoEarn — Claim Orchestrator integration tests (in-memory store, fake tiers)

Coverage:
  - Auto-approved first claim: 8.0 total, 5.6 / 2.4 confirmed
  - Low confidence held for review; nothing settles until a verdict arrives
  - Duplicates raise DuplicateClaim; resubmitting the same id replays
  - Daily quota exhaustion rejects, also for parallel submissions
  - A late reviewer verdict never overwrites the decision that won
  - Achievements are granted once and settled under their own reference
  - Referral reward fires on the referee's first approved claim
"""

import threading
from datetime import date, timedelta
from decimal import Decimal
from unittest import mock

import pytest

from helpers import OWNER_ADDR, PLATFORM_ADDR, FakeBackend, make_claim

from engine.dispatcher import DistributionDispatcher
from engine.errors import DuplicateClaim, ValidationError
from engine.memory_store import MemoryStore
from engine.models import (
    ClaimStatus,
    HumanVerdict,
    Referral,
    ReferralStatus,
    ReviewOutcome,
    ReviewStatus,
    SettlementState,
    SettlementStatus,
    TransactionKind,
    utcnow,
)
from engine.orchestrator import ClaimOrchestrator, achievement_reference
from engine.referrals import ReferralStateMachine


class TestClaimFlow:

    def setup_method(self):
        self.store = MemoryStore()
        self.backend = FakeBackend()
        self.dispatcher = DistributionDispatcher(self.store, [self.backend])
        self.sink = mock.MagicMock()
        self.orchestrator = ClaimOrchestrator(
            self.store,
            self.dispatcher,
            review_sink=self.sink,
            platform_address=PLATFORM_ADDR,
            daily_limit=3,
        )

    def teardown_method(self):
        self.dispatcher.close()

    def test_first_claim_auto_approved_and_settled(self):
        result = self.orchestrator.submit(make_claim(id="c-1"))

        assert result.status == ClaimStatus.APPROVED
        assert result.breakdown.total == Decimal("8.0")
        assert result.breakdown.owner_share == Decimal("5.6")
        assert result.breakdown.platform_share == Decimal("2.4")
        assert result.settlement.status == SettlementStatus.CONFIRMED
        assert result.settlement_state == SettlementState.CONFIRMED
        assert result.achievements == ("first_claim",)

        claim_calls = [c for c in self.backend.calls if c[2]["reference_id"] == "c-1"]
        assert sorted((c[0], c[1]) for c in claim_calls) == sorted([
            (OWNER_ADDR, Decimal("5.6")),
            (PLATFORM_ADDR, Decimal("2.4")),
        ])

    def test_achievement_settled_under_own_reference(self):
        self.orchestrator.submit(make_claim(id="c-1"))
        ref = achievement_reference("owner-1", "first_claim")
        assert len(self.store.confirmed_shares(ref)) == 2
        grants = self.store.list_transactions("owner-1", TransactionKind.ACHIEVEMENT_REWARD)
        assert len(grants) == 1

    def test_low_confidence_held_until_verdict(self):
        claim = make_claim(id="c-2", merchant_ref="Some Shop", ai_confidence=0.4)
        result = self.orchestrator.submit(claim)

        assert result.status == ClaimStatus.REVIEW_PENDING
        assert self.store.list_settlement_records("c-2") == []
        assert self.backend.calls == []
        self.sink.notify.assert_called_once()

        approved = self.orchestrator.redecide("c-2", HumanVerdict.APPROVED)
        assert approved.status == ClaimStatus.APPROVED
        assert approved.settlement.status == SettlementStatus.CONFIRMED

    def test_human_rejection_is_final(self):
        self.orchestrator.submit(make_claim(id="c-3", merchant_ref="Some Shop", ai_confidence=0.4))
        rejected = self.orchestrator.redecide("c-3", HumanVerdict.REJECTED)
        assert rejected.status == ClaimStatus.REJECTED

        again = self.orchestrator.redecide("c-3", HumanVerdict.APPROVED)
        assert again.status == ClaimStatus.REJECTED
        assert self.backend.calls == []

    def test_duplicate_media_raises(self):
        self.orchestrator.submit(make_claim(id="c-4", media_ref="ipfs://receipt"))
        with pytest.raises(DuplicateClaim) as info:
            self.orchestrator.submit(make_claim(id="c-5", media_ref="ipfs://receipt"))
        assert info.value.colliding_claim_id == "c-4"
        assert info.value.score == 100
        assert self.store.get_claim("c-5") is None

    def test_rejected_claims_do_not_block_resubmission(self):
        self.orchestrator.submit(make_claim(id="c-6", merchant_ref="Some Shop",
                                            ai_confidence=0.4, media_ref="ipfs://x"))
        self.orchestrator.redecide("c-6", HumanVerdict.REJECTED)
        result = self.orchestrator.submit(make_claim(id="c-7", media_ref="ipfs://x"))
        assert result.status == ClaimStatus.APPROVED

    def test_resubmitting_same_id_replays(self):
        claim = make_claim(id="c-8")
        first = self.orchestrator.submit(claim)
        calls = len(self.backend.calls)

        second = self.orchestrator.submit(make_claim(id="c-8", media_ref=claim.media_ref))
        assert second.status == first.status
        assert second.breakdown.total == first.breakdown.total
        assert len(self.backend.calls) == calls
        rewards = self.store.list_transactions("owner-1", TransactionKind.CLAIM_REWARD)
        assert len(rewards) == 1

    def test_same_id_from_other_owner_rejected(self):
        self.orchestrator.submit(make_claim(id="c-9"))
        with pytest.raises(ValidationError):
            self.orchestrator.submit(make_claim(id="c-9", owner_id="intruder"))

    def test_daily_quota_exhaustion_rejects(self):
        for i, amount in enumerate(("25", "40", "60")):
            r = self.orchestrator.submit(make_claim(id=f"q-{i}", amount=Decimal(amount)))
            assert r.status == ClaimStatus.APPROVED
        fourth = self.orchestrator.submit(make_claim(id="q-3", amount=Decimal("80")))
        assert fourth.status == ClaimStatus.REJECTED
        assert fourth.reason == "daily_quota_exhausted"

    def test_streak_applies_after_first_claim(self):
        self.orchestrator.submit(make_claim(id="s-1", amount=Decimal("25")))
        second = self.orchestrator.submit(make_claim(id="s-2", amount=Decimal("40")))
        assert second.breakdown.streak_multiplier == Decimal("1.1")

    def test_invalid_claim_rejected_before_persisting(self):
        with pytest.raises(ValidationError):
            self.orchestrator.submit(make_claim(id="v-1", occurred_at=date.today() + timedelta(days=5)))
        with pytest.raises(ValidationError):
            self.orchestrator.submit(make_claim(id="v-2", amount=Decimal("-1")))
        assert self.store.get_claim("v-1") is None

    def test_structurally_empty_claim_rejected(self):
        result = self.orchestrator.submit(make_claim(id="e-1", merchant_ref=None, amount=None))
        assert result.status == ClaimStatus.REJECTED
        assert self.store.get_claim("e-1").review_status == ReviewStatus.REJECTED

    def test_late_verdict_keeps_first_decision(self):
        self.orchestrator.submit(make_claim(id="c-10", merchant_ref="Some Shop", ai_confidence=0.4))
        stale = self.store.get_claim("c-10")
        assert self.orchestrator.redecide("c-10", HumanVerdict.APPROVED).status == ClaimStatus.APPROVED

        # the second reviewer read the claim before the first verdict landed
        real_get = self.store.get_claim
        reads = iter([stale])
        with mock.patch.object(self.store, "get_claim",
                               side_effect=lambda claim_id: next(reads, None) or real_get(claim_id)):
            late = self.orchestrator.redecide("c-10", HumanVerdict.REJECTED)

        assert late.status == ClaimStatus.APPROVED
        decision = self.store.get_decision("c-10")
        assert decision.outcome == ReviewOutcome.AUTO_APPROVE
        assert "human_approved" in decision.reason_codes
        assert self.store.get_claim("c-10").review_status == ReviewStatus.APPROVED
        assert len(self.store.list_transactions("owner-1", TransactionKind.CLAIM_REWARD)) == 1

    def test_reserved_slots_cap_auto_approval(self):
        today = utcnow().date()
        for i in range(3):
            assert self.store.reserve_daily_action("owner-1", today, f"other-{i}", 3)
        result = self.orchestrator.submit(make_claim(id="r-1"))
        assert result.status == ClaimStatus.REJECTED
        assert result.reason == "daily_quota_exhausted"
        assert self.store.get_decision("r-1").outcome == ReviewOutcome.REJECT

    def test_reviewer_approval_not_capped_by_quota(self):
        for i, amount in enumerate(("25", "40", "60")):
            assert self.orchestrator.submit(make_claim(id=f"h-{i}", amount=Decimal(amount))).status == ClaimStatus.APPROVED
        self.store.create_claim(make_claim(id="h-3", merchant_ref="Some Shop", amount=Decimal("80"),
                                           review_status=ReviewStatus.MANUAL_REVIEW))
        assert self.orchestrator.redecide("h-3", HumanVerdict.APPROVED).status == ClaimStatus.APPROVED

    def test_concurrent_submissions_respect_daily_limit(self):
        merchants = ("Shop A", "Shop B", "Shop C", "Shop D", "Shop E", "Shop F")
        amounts = ("25", "40", "60", "80", "95", "120")
        barrier = threading.Barrier(len(merchants))
        results = []

        def worker(i):
            claim = make_claim(id=f"p-{i}", merchant_ref=merchants[i], amount=Decimal(amounts[i]))
            barrier.wait()
            results.append(self.orchestrator.submit(claim))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(merchants))]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        approved = [r for r in results if r.status == ClaimStatus.APPROVED]
        rejected = [r for r in results if r.status == ClaimStatus.REJECTED]
        assert len(approved) == 3
        assert len(rejected) == 3
        assert all(r.reason == "daily_quota_exhausted" for r in rejected)
        assert len(self.store.list_transactions("owner-1", TransactionKind.CLAIM_REWARD)) == 3


class TestSettlementRecovery:

    def setup_method(self):
        self.store = MemoryStore()
        self.backend = FakeBackend(mode="fail")
        self.dispatcher = DistributionDispatcher(self.store, [self.backend])
        self.orchestrator = ClaimOrchestrator(self.store, self.dispatcher, platform_address=PLATFORM_ADDR)

    def teardown_method(self):
        self.dispatcher.close()

    def test_failed_tiers_leave_claim_pending(self):
        result = self.orchestrator.submit(make_claim(id="r-1"))
        assert result.status == ClaimStatus.APPROVED
        assert result.settlement.status == SettlementStatus.PENDING
        assert result.settlement_state == SettlementState.PENDING

    def test_retry_settlement_after_recovery(self):
        self.orchestrator.submit(make_claim(id="r-2"))
        self.backend.mode = "ok"
        result = self.orchestrator.retry_settlement("r-2")
        assert result.settlement.status == SettlementStatus.CONFIRMED
        assert result.settlement_state == SettlementState.CONFIRMED

    def test_manual_resolution_confirms_claim(self):
        self.orchestrator.submit(make_claim(id="r-3"))
        self.orchestrator.resolve_settlement("r-3", "0xowner", "0xplatform")
        assert self.store.get_claim("r-3").settlement_state == SettlementState.CONFIRMED

    def test_retry_requires_approved_claim(self):
        self.orchestrator.submit(make_claim(id="r-4", merchant_ref="Some Shop", ai_confidence=0.3))
        with pytest.raises(ValidationError):
            self.orchestrator.retry_settlement("r-4")


class TestReferralHook:

    def test_first_approved_claim_pays_referrer(self):
        store = MemoryStore()
        backend = FakeBackend()
        dispatcher = DistributionDispatcher(store, [backend])
        referrals = ReferralStateMachine(store, store, dispatcher, PLATFORM_ADDR)
        orchestrator = ClaimOrchestrator(
            store, dispatcher, referrals=referrals, platform_address=PLATFORM_ADDR
        )
        store.create_referral(Referral(
            id="ref-1", referrer_id="alice", referee_id="owner-1", code="A", referrer_address=OWNER_ADDR,
        ))

        orchestrator.submit(make_claim(id="f-1"))
        assert store.get_referral("ref-1").status == ReferralStatus.REWARDED

        orchestrator.submit(make_claim(id="f-2", amount=Decimal("40")))
        rewards = store.list_transactions("alice", TransactionKind.REFERRAL_REWARD)
        assert len(rewards) == 1
        dispatcher.close()
