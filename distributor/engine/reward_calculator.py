"""
EcoEarn — Reward Calculator
===========================

Formula:
    base     = clamp(floor(amount × rate), min, max)        per category
    mult     = 1.0 on first claim, else 1 + min(0.1 × streak, 0.5)
    total    = round1(base × mult + payment_bonus + split_achievements)
    platform = 30 % of total, truncated to 6 dp
    owner    = total − platform  (+ any fixed, unsplit achievement payout)

Pure and stateless; the orchestrator supplies history-derived inputs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, timedelta, timezone
from decimal import ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence, Tuple

from engine.models import (
    ClaimCategory,
    LedgerTransaction,
    RewardBreakdown,
    utcnow,
)


@dataclass(frozen=True)
class CategoryTier:
    minimum: Decimal
    maximum: Decimal
    rate:    Decimal = Decimal("0.1")


@dataclass(frozen=True)
class AchievementReward:
    amount: Decimal
    split:  bool = True


PLATFORM_RATIO  = Decimal(os.getenv("REWARD_PLATFORM_RATIO", "0.3"))
SHARE_QUANTUM   = Decimal("0.000001")
TOTAL_QUANTUM   = Decimal("0.1")

DIGITAL_PAYMENT_BONUS = Decimal(os.getenv("REWARD_DIGITAL_PAYMENT_BONUS", "0.3"))
PARTNER_CARD_BONUS    = Decimal(os.getenv("REWARD_PARTNER_CARD_BONUS", "1.0"))
PARTNER_CARD_LAST_FOUR = frozenset(
    p.strip() for p in os.getenv("REWARD_PARTNER_CARD_LAST_FOUR", "").split(",") if p.strip()
)
NON_DIGITAL_METHODS = frozenset({"", "cash", "unknown"})


def split_total(total: Decimal, platform_ratio: Decimal = PLATFORM_RATIO) -> Tuple[Decimal, Decimal]:
    """(owner, platform). Truncation remainder stays with the owner, so they always sum to ``total``."""
    platform = (total * platform_ratio).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)
    return total - platform, platform


def consecutive_day_streak(
    transactions: Iterable[LedgerTransaction],
    today: Optional[date] = None,
) -> int:
    """Consecutive active days ending today (or yesterday, if nothing yet today)."""
    today = today or utcnow().date()
    days = {tx.created_at.astimezone(timezone.utc).date() for tx in transactions}
    cursor = today if today in days else today - timedelta(days=1)
    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


class RewardCalculator:

    CATEGORY_TIERS = {
        ClaimCategory.RIDE_SHARE:           CategoryTier(Decimal("5"), Decimal("8")),
        ClaimCategory.ELECTRIC_VEHICLE:     CategoryTier(Decimal("6"), Decimal("8")),
        ClaimCategory.PUBLIC_TRANSIT:       CategoryTier(Decimal("3"), Decimal("5")),
        ClaimCategory.MICROMOBILITY:        CategoryTier(Decimal("2"), Decimal("5")),
        ClaimCategory.PRE_OWNED:            CategoryTier(Decimal("8"), Decimal("15")),
        ClaimCategory.USED_BOOKS:           CategoryTier(Decimal("6"), Decimal("12")),
        ClaimCategory.SUSTAINABLE_PURCHASE: CategoryTier(Decimal("8"), Decimal("15")),
        ClaimCategory.UNKNOWN:              CategoryTier(Decimal("1"), Decimal("3")),
    }

    ACHIEVEMENT_REWARDS = {
        "first_claim":     AchievementReward(Decimal("10")),
        "five_claims":     AchievementReward(Decimal("10")),
        "ten_claims":      AchievementReward(Decimal("15")),
        "monthly_record":  AchievementReward(Decimal("10")),
        "token_milestone": AchievementReward(Decimal("10"), split=False),
    }

    MAX_STREAK_BONUS = Decimal("0.5")
    STREAK_STEP      = Decimal("0.1")

    def __init__(self, platform_ratio: Decimal = PLATFORM_RATIO,
                 partner_cards: frozenset = PARTNER_CARD_LAST_FOUR):
        self.platform_ratio = platform_ratio
        self.partner_cards = partner_cards

    def base_amount(self, amount: Optional[Decimal], category: ClaimCategory) -> Decimal:
        tier = self.CATEGORY_TIERS.get(category, self.CATEGORY_TIERS[ClaimCategory.UNKNOWN])
        raw = ((amount or Decimal("0")) * tier.rate).to_integral_value(rounding=ROUND_FLOOR)
        return min(tier.maximum, max(tier.minimum, raw))

    def streak_multiplier(self, is_first_claim: bool, streak_days: int) -> Decimal:
        # A stale counter must never inflate the first claim.
        if is_first_claim:
            return Decimal("1.0")
        bonus = min(self.STREAK_STEP * max(0, int(streak_days)), self.MAX_STREAK_BONUS)
        return Decimal("1.0") + bonus

    def payment_bonus(self, payment_method: Optional[str], card_last_four: Optional[str]) -> Decimal:
        bonus = Decimal("0")
        if (payment_method or "").strip().lower() not in NON_DIGITAL_METHODS:
            bonus += DIGITAL_PAYMENT_BONUS
        if card_last_four and card_last_four.strip() in self.partner_cards:
            bonus += PARTNER_CARD_BONUS
        return bonus

    def achievement_amount(self, kind: str) -> Decimal:
        reward = self.ACHIEVEMENT_REWARDS.get(kind)
        return reward.amount if reward else Decimal("0")

    def achievement_shares(self, kind: str) -> Tuple[Decimal, Decimal]:
        """(owner, platform) for an achievement paid on its own."""
        reward = self.ACHIEVEMENT_REWARDS.get(kind)
        if reward is None:
            return Decimal("0"), Decimal("0")
        if not reward.split:
            return reward.amount, Decimal("0")
        return split_total(reward.amount, self.platform_ratio)

    def calculate(
        self,
        claim_id: str,
        amount: Optional[Decimal],
        category: ClaimCategory,
        is_first_claim: bool,
        streak_days: int = 0,
        payment_method: Optional[str] = None,
        card_last_four: Optional[str] = None,
        achievements: Sequence[str] = (),
    ) -> RewardBreakdown:
        """``achievements`` must only list kinds the Achievement Ledger newly granted."""
        base = self.base_amount(amount, category)
        mult = self.streak_multiplier(is_first_claim, streak_days)
        pay  = self.payment_bonus(payment_method, card_last_four)

        split_bonus = Decimal("0")
        fixed_bonus = Decimal("0")
        granted = []
        for kind in dict.fromkeys(achievements):
            reward = self.ACHIEVEMENT_REWARDS.get(kind)
            if reward is None:
                continue
            granted.append(kind)
            if reward.split:
                split_bonus += reward.amount
            else:
                fixed_bonus += reward.amount

        total = (base * mult + pay + split_bonus).quantize(TOTAL_QUANTUM, rounding=ROUND_HALF_UP)
        owner, platform = split_total(total, self.platform_ratio)

        return RewardBreakdown(
            claim_id=claim_id,
            base_amount=base,
            streak_multiplier=mult,
            payment_bonus=pay,
            achievement_bonus=split_bonus + fixed_bonus,
            owner_share=owner + fixed_bonus,
            platform_share=platform,
            unsplit_bonus=fixed_bonus,
            granted_achievements=tuple(granted),
        )
