"""
EcoEarn — Referral State Machine tests

Coverage:
  - pending → processing → rewarded exactly once under concurrency
  - Eligibility: referee's first verified claim only
  - Unlock on failed settlement / raised dispatch
  - Value moved but bookkeeping failed → ReconciliationRequired, no unlock
  - One referral per referee, also when registrations race
"""

import threading
from decimal import Decimal

import pytest

from helpers import OWNER_ADDR, PLATFORM_ADDR, FakeBackend, make_claim

from engine.dispatcher import DistributionDispatcher
from engine.errors import ReconciliationRequired
from engine.memory_store import MemoryStore
from engine.models import Referral, ReferralStatus, ReviewStatus, TransactionKind
from engine.referrals import ReferralOutcome, ReferralStateMachine, referral_reference


class TestReferralStateMachine:

    def setup_method(self):
        self.store = MemoryStore()
        self.backend = FakeBackend()
        self.dispatcher = DistributionDispatcher(self.store, [self.backend])
        self.machine = ReferralStateMachine(self.store, self.store, self.dispatcher, PLATFORM_ADDR)
        self.referral = Referral(
            id="ref-1",
            referrer_id="alice",
            referee_id="bob",
            code="ALICE15",
            referrer_address=OWNER_ADDR,
        )
        self.store.create_referral(self.referral)

    def teardown_method(self):
        self.dispatcher.close()

    def _approve_claims(self, n):
        for _ in range(n):
            self.store.create_claim(make_claim(owner_id="bob", review_status=ReviewStatus.APPROVED))

    def test_first_verified_claim_rewards_referrer(self):
        self._approve_claims(1)
        assert self.machine.process("bob") == ReferralOutcome.REWARDED
        assert self.store.get_referral("ref-1").status == ReferralStatus.REWARDED

        rewards = self.store.list_transactions("alice", TransactionKind.REFERRAL_REWARD)
        assert [t.amount for t in rewards] == [Decimal("10.5")]
        platform = self.store.list_transactions_by_kind(TransactionKind.PLATFORM_SHARE)
        assert [t.amount for t in platform] == [Decimal("4.5")]

    def test_concurrent_processing_rewards_once(self):
        self._approve_claims(1)
        barrier = threading.Barrier(20)
        outcomes = []

        def worker():
            barrier.wait()
            outcomes.append(self.machine.process("bob"))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ReferralOutcome.REWARDED) == 1
        assert len(self.store.list_transactions("alice", TransactionKind.REFERRAL_REWARD)) == 1
        assert len(self.store.list_transactions_by_kind(TransactionKind.PLATFORM_SHARE)) == 1
        assert len(self.backend.calls) == 2

    def test_no_verified_claim_unlocks(self):
        assert self.machine.process("bob") == ReferralOutcome.NOT_FIRST_CLAIM
        assert self.store.get_referral("ref-1").status == ReferralStatus.PENDING

    def test_later_claims_are_not_first(self):
        self._approve_claims(2)
        assert self.machine.process("bob") == ReferralOutcome.NOT_FIRST_CLAIM
        assert self.backend.calls == []

    def test_unknown_referee(self):
        assert self.machine.process("carol") == ReferralOutcome.NO_REFERRAL

    def test_already_rewarded_is_not_pending(self):
        self._approve_claims(1)
        self.machine.process("bob")
        assert self.machine.process("bob") == ReferralOutcome.NOT_PENDING

    def test_failed_settlement_unlocks_for_retry(self):
        self._approve_claims(1)
        self.backend.mode = "fail"
        assert self.machine.process("bob") == ReferralOutcome.SETTLEMENT_PENDING
        assert self.store.get_referral("ref-1").status == ReferralStatus.PENDING

        self.backend.mode = "ok"
        assert self.machine.process("bob") == ReferralOutcome.REWARDED

    def test_dispatch_exception_unlocks_and_propagates(self, monkeypatch):
        self._approve_claims(1)

        def boom(*args, **kwargs):
            raise RuntimeError("dispatcher down")
        monkeypatch.setattr(self.dispatcher, "dispatch", boom)

        with pytest.raises(RuntimeError):
            self.machine.process("bob")
        assert self.store.get_referral("ref-1").status == ReferralStatus.PENDING

    def test_missing_referrer_address_uses_resolver(self):
        self.store.create_referral(Referral(id="ref-2", referrer_id="dana", referee_id="erin", code="D"))
        self.store.create_claim(make_claim(owner_id="erin", review_status=ReviewStatus.APPROVED))

        machine = ReferralStateMachine(self.store, self.store, self.dispatcher, PLATFORM_ADDR)
        assert machine.process("erin") == ReferralOutcome.NO_DESTINATION
        assert self.store.get_referral("ref-2").status == ReferralStatus.PENDING

        machine.address_resolver = lambda owner_id: OWNER_ADDR
        assert machine.process("erin") == ReferralOutcome.REWARDED

    def test_bookkeeping_failure_requires_reconciliation(self, monkeypatch):
        self._approve_claims(1)

        def refuse(referral_id, transactions):
            raise ConnectionError("ledger offline")
        monkeypatch.setattr(self.store, "complete_referral_reward", refuse)

        with pytest.raises(ReconciliationRequired) as info:
            self.machine.process("bob")
        assert info.value.reference_id == referral_reference("ref-1")
        assert len(info.value.tx_refs) == 2
        # must stay locked: value already moved
        assert self.store.get_referral("ref-1").status == ReferralStatus.PROCESSING


class TestReferralRegistration:

    def setup_method(self):
        self.store = MemoryStore()

    def test_second_referral_for_same_referee_refused(self):
        assert self.store.create_referral(Referral(id="ref-1", referrer_id="alice", referee_id="bob", code="A"))
        assert not self.store.create_referral(Referral(id="ref-2", referrer_id="carol", referee_id="bob", code="C"))
        assert self.store.get_referral_by_referee("bob").referrer_id == "alice"
        assert self.store.get_referral("ref-2") is None

    def test_concurrent_registrations_keep_one(self):
        barrier = threading.Barrier(20)
        created = []

        def worker(i):
            barrier.wait()
            referral = Referral(id=f"ref-{i}", referrer_id=f"user-{i}", referee_id="bob", code=str(i))
            created.append(self.store.create_referral(referral))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert created.count(True) == 1
        winner = self.store.get_referral_by_referee("bob")
        assert sum(self.store.get_referral(f"ref-{i}") is not None for i in range(20)) == 1
        assert winner is not None
