"""
EcoEarn — Review Router
=======================

The one place review policy is applied. Submission and every later
re-decision (a reviewer's verdict coming back) call ``route`` with the inputs
they have; nothing else is allowed to flip a claim to auto_approve.

Priority (first match wins):
  1. Human verdict on record          → reject / auto_approve
  2. Structurally invalid             → reject
  3. Daily quota exhausted            → reject
  4. Always-manual category           → manual_review
  5. Trusted merchant + trusted conf. → auto_approve
  6. Hold flag from the classifier    → manual_review
  7. Missing merchant or amount       → manual_review
  8. Confidence ≥ default threshold   → auto_approve
  9. Otherwise                        → manual_review
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from engine.models import (
    Claim,
    ClaimCategory,
    HumanVerdict,
    ReviewDecision,
    ReviewOutcome,
)

logger = logging.getLogger("ecoearn.review")

# ── Configuration ──────────────────────────────────────────────────────────────
DEFAULT_CONFIDENCE_THRESHOLD = float(os.getenv("REVIEW_DEFAULT_THRESHOLD", "0.80"))
TRUSTED_CONFIDENCE_THRESHOLD = float(os.getenv("REVIEW_TRUSTED_THRESHOLD", "0.70"))

_DEFAULT_TRUSTED = (
    "goodwill,salvation army,savers,value village,plato's closet,"
    "buffalo exchange,habitat for humanity restore,half price books"
)


def _csv_env(name: str, default: str) -> frozenset:
    raw = os.getenv(name, default)
    return frozenset(" ".join(p.lower().split()) for p in raw.split(",") if p.strip())


TRUSTED_MERCHANTS = _csv_env("REVIEW_TRUSTED_MERCHANTS", _DEFAULT_TRUSTED)
HOLD_FLAGS        = _csv_env("REVIEW_HOLD_FLAGS", "timeout_fallback,test_mode,manual_review_requested")
ALWAYS_MANUAL     = frozenset(
    ClaimCategory.parse(c) for c in _csv_env("REVIEW_ALWAYS_MANUAL", "public_transit")
)


class ReasonCode(str, Enum):
    HUMAN_APPROVED          = "human_approved"
    HUMAN_REJECTED          = "human_rejected"
    INVALID_STRUCTURE       = "invalid_structure"
    DAILY_QUOTA_EXHAUSTED   = "daily_quota_exhausted"
    ALWAYS_MANUAL_CATEGORY  = "always_manual_category"
    TRUSTED_MERCHANT        = "trusted_merchant"
    HOLD_FLAG               = "hold_flag"
    MISSING_MERCHANT        = "missing_merchant"
    MISSING_AMOUNT          = "missing_amount"
    CONFIDENCE_ABOVE_THRESHOLD = "confidence_above_threshold"
    CONFIDENCE_BELOW_THRESHOLD = "confidence_below_threshold"
    CONFIDENCE_SANITIZED    = "confidence_sanitized"


@dataclass
class ReviewPolicy:
    default_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    trusted_threshold: float = TRUSTED_CONFIDENCE_THRESHOLD
    trusted_merchants: frozenset = TRUSTED_MERCHANTS
    always_manual:     frozenset = ALWAYS_MANUAL
    hold_flags:        frozenset = HOLD_FLAGS

    def is_trusted(self, merchant_key: str) -> bool:
        return bool(merchant_key) and merchant_key in self.trusted_merchants


@dataclass
class ReviewInputs:
    claim:            Claim
    merchant_trusted: Optional[bool] = None
    quota_remaining:  Optional[int] = None
    human_verdict:    Optional[HumanVerdict] = None


def sanitize_confidence(raw: Any) -> tuple:
    """Returns (confidence in [0, 1], was_sanitized)."""
    if isinstance(raw, bool):
        return 0.0, True
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0, True
    if math.isnan(value) or math.isinf(value):
        return 0.0, True
    clamped = max(0.0, min(1.0, value))
    return clamped, clamped != value


def route(inputs: ReviewInputs, policy: Optional[ReviewPolicy] = None) -> ReviewDecision:
    policy = policy or ReviewPolicy()
    claim = inputs.claim
    reasons: List[str] = []

    confidence, sanitized = sanitize_confidence(claim.ai_confidence)
    if sanitized:
        reasons.append(ReasonCode.CONFIDENCE_SANITIZED.value)

    def decide(outcome: ReviewOutcome, code: ReasonCode) -> ReviewDecision:
        reasons.append(code.value)
        logger.info(
            f"[REVIEW] claim={claim.id} outcome={outcome.value} "
            f"confidence={confidence:.2f} reasons={reasons}"
        )
        return ReviewDecision(
            claim_id=claim.id,
            outcome=outcome,
            reason_codes=tuple(reasons),
            confidence_used=confidence,
        )

    if inputs.human_verdict == HumanVerdict.REJECTED:
        return decide(ReviewOutcome.REJECT, ReasonCode.HUMAN_REJECTED)
    if inputs.human_verdict == HumanVerdict.APPROVED:
        return decide(ReviewOutcome.AUTO_APPROVE, ReasonCode.HUMAN_APPROVED)

    has_merchant = bool(claim.merchant_key)
    has_amount = claim.amount is not None
    if not has_merchant and not has_amount:
        return decide(ReviewOutcome.REJECT, ReasonCode.INVALID_STRUCTURE)

    if inputs.quota_remaining is not None and inputs.quota_remaining <= 0:
        return decide(ReviewOutcome.REJECT, ReasonCode.DAILY_QUOTA_EXHAUSTED)

    if claim.ai_category in policy.always_manual:
        return decide(ReviewOutcome.MANUAL_REVIEW, ReasonCode.ALWAYS_MANUAL_CATEGORY)

    trusted = inputs.merchant_trusted
    if trusted is None:
        trusted = policy.is_trusted(claim.merchant_key)
    if trusted and confidence >= policy.trusted_threshold:
        return decide(ReviewOutcome.AUTO_APPROVE, ReasonCode.TRUSTED_MERCHANT)

    flags = {" ".join(str(f).lower().split()) for f in claim.raw_ai_flags}
    if flags & policy.hold_flags:
        return decide(ReviewOutcome.MANUAL_REVIEW, ReasonCode.HOLD_FLAG)

    if not has_merchant:
        return decide(ReviewOutcome.MANUAL_REVIEW, ReasonCode.MISSING_MERCHANT)
    if not has_amount:
        return decide(ReviewOutcome.MANUAL_REVIEW, ReasonCode.MISSING_AMOUNT)

    if confidence >= policy.default_threshold:
        return decide(ReviewOutcome.AUTO_APPROVE, ReasonCode.CONFIDENCE_ABOVE_THRESHOLD)
    return decide(ReviewOutcome.MANUAL_REVIEW, ReasonCode.CONFIDENCE_BELOW_THRESHOLD)
