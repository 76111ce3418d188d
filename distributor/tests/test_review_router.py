"""
EcoEarn — Review Router & daily quota tests

Coverage:
  - Rule priority: human verdict, structure, quota, always-manual, trusted,
    hold flags, default threshold
  - Every decision records the reason that fired
  - Untrusted confidence sanitised (NaN, strings, out of range)
  - Daily quota counting
"""

import math
from datetime import date, timedelta

import pytest

from helpers import make_claim, make_tx

from engine.daily_quota import daily_quota, remaining_actions
from engine.models import ClaimCategory, HumanVerdict, ReviewOutcome, TransactionKind
from engine.review_router import (
    ReasonCode,
    ReviewInputs,
    ReviewPolicy,
    route,
    sanitize_confidence,
)


def _route(claim, **kw):
    return route(ReviewInputs(claim=claim, **kw), ReviewPolicy())


class TestRulePriority:

    def test_high_confidence_auto_approves(self):
        d = _route(make_claim(merchant_ref="Some Shop", ai_confidence=0.85))
        assert d.outcome == ReviewOutcome.AUTO_APPROVE
        assert d.reason_codes[-1] == ReasonCode.CONFIDENCE_ABOVE_THRESHOLD.value

    def test_low_confidence_goes_to_manual(self):
        d = _route(make_claim(merchant_ref="Some Shop", ai_confidence=0.4))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW
        assert d.reason_codes[-1] == ReasonCode.CONFIDENCE_BELOW_THRESHOLD.value

    def test_trusted_merchant_uses_lower_threshold(self):
        d = _route(make_claim(merchant_ref="Goodwill", ai_confidence=0.72))
        assert d.outcome == ReviewOutcome.AUTO_APPROVE
        assert d.reason_codes[-1] == ReasonCode.TRUSTED_MERCHANT.value

    def test_trusted_merchant_below_trusted_threshold(self):
        d = _route(make_claim(merchant_ref="Goodwill", ai_confidence=0.6))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW

    def test_always_manual_category_wins_over_confidence(self):
        d = _route(make_claim(ai_category=ClaimCategory.PUBLIC_TRANSIT, ai_confidence=1.0))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW
        assert d.reason_codes[-1] == ReasonCode.ALWAYS_MANUAL_CATEGORY.value

    def test_trusted_merchant_overrides_hold_flags(self):
        d = _route(make_claim(merchant_ref="Goodwill", ai_confidence=0.9,
                              raw_ai_flags=frozenset({"timeout_fallback"})))
        assert d.outcome == ReviewOutcome.AUTO_APPROVE

    def test_hold_flag_blocks_default_auto_approve(self):
        d = _route(make_claim(merchant_ref="Some Shop", ai_confidence=0.99,
                              raw_ai_flags=frozenset({"Test_Mode"})))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW
        assert d.reason_codes[-1] == ReasonCode.HOLD_FLAG.value

    def test_missing_merchant_and_amount_rejected(self):
        d = _route(make_claim(merchant_ref=None, amount=None, ai_confidence=0.99))
        assert d.outcome == ReviewOutcome.REJECT
        assert d.reason_codes == (ReasonCode.INVALID_STRUCTURE.value,)

    def test_missing_merchant_only_is_held(self):
        d = _route(make_claim(merchant_ref="  ", ai_confidence=0.99))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW
        assert d.reason_codes[-1] == ReasonCode.MISSING_MERCHANT.value

    def test_exhausted_quota_rejects(self):
        d = _route(make_claim(ai_confidence=0.99), quota_remaining=0)
        assert d.outcome == ReviewOutcome.REJECT
        assert d.reason_codes[-1] == ReasonCode.DAILY_QUOTA_EXHAUSTED.value

    def test_human_approval_reenters_same_router(self):
        claim = make_claim(merchant_ref="Some Shop", ai_confidence=0.4)
        assert _route(claim).outcome == ReviewOutcome.MANUAL_REVIEW
        d = _route(claim, human_verdict=HumanVerdict.APPROVED)
        assert d.outcome == ReviewOutcome.AUTO_APPROVE
        assert d.reason_codes[-1] == ReasonCode.HUMAN_APPROVED.value

    def test_human_rejection(self):
        d = _route(make_claim(ai_confidence=0.99), human_verdict=HumanVerdict.REJECTED)
        assert d.outcome == ReviewOutcome.REJECT

    def test_policy_thresholds_configurable(self):
        claim = make_claim(merchant_ref="Some Shop", ai_confidence=0.75)
        assert route(ReviewInputs(claim), ReviewPolicy()).outcome == ReviewOutcome.MANUAL_REVIEW
        loose = ReviewPolicy(default_threshold=0.7)
        assert route(ReviewInputs(claim), loose).outcome == ReviewOutcome.AUTO_APPROVE

    def test_explicit_trust_flag_overrides_allowlist(self):
        claim = make_claim(merchant_ref="Corner Thrift", ai_confidence=0.72)
        d = route(ReviewInputs(claim, merchant_trusted=True), ReviewPolicy())
        assert d.outcome == ReviewOutcome.AUTO_APPROVE


class TestConfidenceSanitising:

    @pytest.mark.parametrize("raw, expected", [
        (float("nan"), 0.0),
        (float("inf"), 0.0),
        ("0.9", 0.9),
        ("garbage", 0.0),
        (None, 0.0),
        (True, 0.0),
        (1.7, 1.0),
        (-0.3, 0.0),
    ])
    def test_sanitize(self, raw, expected):
        value, _ = sanitize_confidence(raw)
        assert math.isclose(value, expected)

    def test_nan_confidence_never_auto_approves(self):
        d = _route(make_claim(merchant_ref="Some Shop", ai_confidence=float("nan")))
        assert d.outcome == ReviewOutcome.MANUAL_REVIEW
        assert d.confidence_used == 0.0
        assert ReasonCode.CONFIDENCE_SANITIZED.value in d.reason_codes


class TestDailyQuota:

    TODAY = date(2026, 6, 1)

    def test_counts_only_todays_claim_rewards(self):
        txs = [
            make_tx("o", self.TODAY),
            make_tx("o", self.TODAY),
            make_tx("o", self.TODAY, kind=TransactionKind.ACHIEVEMENT_REWARD),
            make_tx("o", self.TODAY - timedelta(days=1)),
        ]
        quota = daily_quota(txs, self.TODAY, limit=3)
        assert quota.action_count == 2
        assert quota.remaining == 1
        assert not quota.limit_reached

    def test_limit_reached(self):
        txs = [make_tx("o", self.TODAY) for _ in range(4)]
        assert remaining_actions(txs, self.TODAY, limit=3) == 0
