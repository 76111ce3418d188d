"""
EcoEarn — Similarity Scorer (duplicate-claim detection)
=======================================================

Scores a new claim against every prior claim of the same owner.

Factors:
  1. Media fingerprint   — identical fingerprint is always a duplicate (100)
  2. Merchant identity   — normalised, case-insensitive
  3. Amount              — within an absolute tolerance
  4. Calendar day        — same occurred_at date

Recurring categories (short trips, transit, rentals) legitimately repeat many
times a day, so they use low per-factor weights. Everything else uses the
strict weights.

Pure module: no I/O, safe to call from any number of threads.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from engine.models import Claim, ClaimCategory

logger = logging.getLogger("ecoearn.similarity")

# ── Configuration ──────────────────────────────────────────────────────────────
DUPLICATE_THRESHOLD     = int(os.getenv("SIMILARITY_DUPLICATE_THRESHOLD", "90"))
AMOUNT_TOLERANCE        = Decimal(os.getenv("SIMILARITY_AMOUNT_TOLERANCE", "0.50"))
SMALL_FARE_CEILING      = Decimal(os.getenv("SIMILARITY_SMALL_FARE_CEILING", "5.00"))
SMALL_FARE_MIN_HISTORY  = int(os.getenv("SIMILARITY_SMALL_FARE_MIN_HISTORY", "2"))

MEDIA_MATCH_SCORE = 100

RECURRING_CATEGORIES = frozenset({
    ClaimCategory.RIDE_SHARE,
    ClaimCategory.PUBLIC_TRANSIT,
    ClaimCategory.MICROMOBILITY,
    ClaimCategory.ELECTRIC_VEHICLE,
})


@dataclass(frozen=True)
class FactorWeights:
    merchant: int
    amount:   int
    date:     int


@dataclass
class SimilarityPolicy:
    """Tunable scoring policy. Defaults come from the environment."""
    threshold:            int = DUPLICATE_THRESHOLD
    amount_tolerance:     Decimal = AMOUNT_TOLERANCE
    strict_weights:       FactorWeights = FactorWeights(merchant=40, amount=30, date=20)
    lenient_weights:      FactorWeights = FactorWeights(merchant=15, amount=10, date=5)
    lenient_all_match:    int = 95
    # Two distinct proof images of a recurring trip are two trips; the
    # all-factor escalation only fires when one side has no fingerprint.
    lenient_requires_missing_media: bool = True
    recurring_categories: frozenset = RECURRING_CATEGORIES
    small_fare_ceiling:   Decimal = SMALL_FARE_CEILING
    small_fare_min_history: int = SMALL_FARE_MIN_HISTORY


@dataclass
class SimilarityMatch:
    prior_claim_id: str
    score:          int
    factors:        List[str] = field(default_factory=list)
    lenient:        bool = False

    def to_dict(self) -> dict:
        return {
            "prior_claim_id": self.prior_claim_id,
            "score":          self.score,
            "factors":        list(self.factors),
            "lenient":        self.lenient,
        }


@dataclass
class SimilarityReport:
    claim_id:  str
    matches:   List[SimilarityMatch]
    threshold: int

    @property
    def duplicates(self) -> List[SimilarityMatch]:
        return [
            m for m in self.matches
            if m.score >= self.threshold or "media" in m.factors
        ]

    @property
    def is_duplicate(self) -> bool:
        return bool(self.duplicates)

    @property
    def worst(self) -> Optional[SimilarityMatch]:
        dups = self.duplicates
        if not dups:
            return None
        return max(dups, key=lambda m: m.score)


# ══════════════════════════════════════════════════════════════════════════════
#  Factor helpers
# ══════════════════════════════════════════════════════════════════════════════

def _same_amount(a: Optional[Decimal], b: Optional[Decimal], tolerance: Decimal) -> bool:
    if a is None or b is None:
        return False
    return abs(a - b) < tolerance


def _is_small_recurring_fare(
    claim: Claim,
    history: Sequence[Claim],
    policy: SimilarityPolicy,
) -> bool:
    """A tiny fare the owner keeps buying from the same merchant looks like transit."""
    if claim.amount is None or claim.amount > policy.small_fare_ceiling:
        return False
    key = claim.merchant_key
    repeats = sum(1 for c in history if c.merchant_key == key)
    return repeats >= policy.small_fare_min_history


def score_pair(
    claim: Claim,
    prior: Claim,
    policy: Optional[SimilarityPolicy] = None,
    history: Sequence[Claim] = (),
) -> SimilarityMatch:
    """Score one prior claim against the new one."""
    policy = policy or SimilarityPolicy()

    fp_new, fp_old = claim.fingerprint, prior.fingerprint
    if fp_new and fp_new == fp_old:
        return SimilarityMatch(prior.id, MEDIA_MATCH_SCORE, ["media"])

    same_merchant = bool(claim.merchant_key) and claim.merchant_key == prior.merchant_key
    same_amount   = _same_amount(claim.amount, prior.amount, policy.amount_tolerance)
    same_date     = claim.occurred_at == prior.occurred_at
    all_match     = same_merchant and same_amount and same_date

    factors = [
        name for name, hit in (
            ("merchant", same_merchant),
            ("amount", same_amount),
            ("date", same_date),
        ) if hit
    ]

    lenient = (
        claim.ai_category in policy.recurring_categories
        or prior.ai_category in policy.recurring_categories
    )
    if not lenient and all_match and _is_small_recurring_fare(claim, history, policy):
        logger.info(
            f"[SIMILARITY] Small recurring fare {claim.amount} at '{claim.merchant_ref}' "
            f"treated leniently"
        )
        lenient = True

    if lenient:
        distinct_media = bool(fp_new) and bool(fp_old)
        if all_match and not (policy.lenient_requires_missing_media and distinct_media):
            return SimilarityMatch(prior.id, policy.lenient_all_match, factors, lenient=True)
        w = policy.lenient_weights
    else:
        w = policy.strict_weights

    score = (
        (w.merchant if same_merchant else 0)
        + (w.amount if same_amount else 0)
        + (w.date if same_date else 0)
    )
    return SimilarityMatch(prior.id, min(score, MEDIA_MATCH_SCORE), factors, lenient=lenient)


def score_against_history(
    claim: Claim,
    prior_claims: Iterable[Claim],
    policy: Optional[SimilarityPolicy] = None,
) -> SimilarityReport:
    """Score ``claim`` against each prior claim of its owner (the claim itself is skipped)."""
    policy = policy or SimilarityPolicy()
    history = [c for c in prior_claims if c.id != claim.id]

    matches = [score_pair(claim, prior, policy, history) for prior in history]
    report = SimilarityReport(claim.id, matches, policy.threshold)

    worst = report.worst
    if worst is not None:
        logger.warning(
            f"[SIMILARITY] Claim {claim.id} collides with {worst.prior_claim_id} "
            f"score={worst.score} factors={worst.factors}"
        )
    return report
