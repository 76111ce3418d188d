"""
EcoEarn — Reward Engine Data Model
==================================
Dataclasses and enumerations shared by every engine component.

Money is always ``Decimal``. Every record knows how to turn itself into a
JSON-safe dict (``to_dict``) and back (``from_dict``) so the Redis store can
persist it without a schema layer.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def to_decimal(value: Any) -> Decimal:
    """Coerce numbers and numeric strings to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(_jsonable(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def _opt_decimal(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _dt(value: Any) -> datetime:
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


class _Record:
    """Mixin giving dataclasses the to_dict / to_json pair."""

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class ClaimCategory(str, Enum):
    RIDE_SHARE           = "ride_share"
    ELECTRIC_VEHICLE     = "electric_vehicle"
    PUBLIC_TRANSIT       = "public_transit"
    MICROMOBILITY        = "micromobility"
    PRE_OWNED            = "pre_owned"
    USED_BOOKS           = "used_books"
    SUSTAINABLE_PURCHASE = "sustainable_purchase"
    UNKNOWN              = "unknown"

    @classmethod
    def parse(cls, raw: Any) -> "ClaimCategory":
        """Classifier output is untrusted; anything unrecognised is UNKNOWN."""
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class ReviewStatus(str, Enum):
    PENDING       = "pending"
    APPROVED      = "approved"
    MANUAL_REVIEW = "manual_review"
    REJECTED      = "rejected"


class ReviewOutcome(str, Enum):
    AUTO_APPROVE  = "auto_approve"
    MANUAL_REVIEW = "manual_review"
    REJECT        = "reject"


class HumanVerdict(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class SettlementState(str, Enum):
    UNSETTLED = "unsettled"
    PENDING   = "pending"
    CONFIRMED = "confirmed"


class BackendTier(str, Enum):
    LEDGER_DIRECT  = "ledger_direct"
    TREASURY_POOL  = "treasury_pool"
    SANDBOX_NODE   = "sandbox_node"
    PENDING_MANUAL = "pending_manual"


class SettlementStatus(str, Enum):
    PENDING   = "pending"
    CONFIRMED = "confirmed"
    FAILED    = "failed"


class ShareKind(str, Enum):
    OWNER    = "owner"
    PLATFORM = "platform"


class ReferralStatus(str, Enum):
    PENDING    = "pending"
    PROCESSING = "processing"
    REWARDED   = "rewarded"


class TransactionKind(str, Enum):
    CLAIM_REWARD       = "claim_reward"
    ACHIEVEMENT_REWARD = "achievement_reward"
    REFERRAL_REWARD    = "referral_reward"
    PLATFORM_SHARE     = "platform_share"


class ClaimStatus(str, Enum):
    APPROVED       = "approved"
    REVIEW_PENDING = "review_pending"
    REJECTED       = "rejected"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------
@dataclass
class Claim(_Record):
    """A submitted proof-of-activity receipt."""
    id:             str
    owner_id:       str
    merchant_ref:   Optional[str]
    amount:         Optional[Decimal]
    occurred_at:    date
    media_ref:      str
    ai_confidence:  float
    ai_category:    ClaimCategory
    raw_ai_flags:   frozenset = field(default_factory=frozenset)
    owner_address:  Optional[str] = None
    media_hash:     Optional[str] = None
    payment_method: Optional[str] = None
    card_last_four: Optional[str] = None
    review_status:    ReviewStatus    = ReviewStatus.PENDING
    settlement_state: SettlementState = SettlementState.UNSETTLED
    submitted_at:   datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> str:
        return (self.media_hash or self.media_ref or "").strip().lower()

    @property
    def merchant_key(self) -> str:
        return " ".join((self.merchant_ref or "").lower().split())

    @classmethod
    def from_dict(cls, data: dict) -> "Claim":
        occurred = data["occurred_at"]
        return cls(
            id=data["id"],
            owner_id=str(data["owner_id"]),
            merchant_ref=data.get("merchant_ref"),
            amount=_opt_decimal(data.get("amount")),
            occurred_at=occurred if isinstance(occurred, date) else date.fromisoformat(occurred),
            media_ref=data.get("media_ref", ""),
            ai_confidence=data.get("ai_confidence", 0.0),
            ai_category=ClaimCategory.parse(data.get("ai_category")),
            raw_ai_flags=frozenset(data.get("raw_ai_flags") or ()),
            owner_address=data.get("owner_address"),
            media_hash=data.get("media_hash"),
            payment_method=data.get("payment_method"),
            card_last_four=data.get("card_last_four"),
            review_status=ReviewStatus(data.get("review_status", "pending")),
            settlement_state=SettlementState(data.get("settlement_state", "unsettled")),
            submitted_at=_dt(data["submitted_at"]) if data.get("submitted_at") else utcnow(),
        )


@dataclass
class ReviewDecision(_Record):
    claim_id:        str
    outcome:         ReviewOutcome
    reason_codes:    tuple
    confidence_used: float
    decided_at:      datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewDecision":
        return cls(
            claim_id=data["claim_id"],
            outcome=ReviewOutcome(data["outcome"]),
            reason_codes=tuple(data.get("reason_codes", ())),
            confidence_used=float(data["confidence_used"]),
            decided_at=_dt(data["decided_at"]),
        )


@dataclass
class RewardBreakdown(_Record):
    """
    Invariant: owner_share + platform_share
               == base_amount * streak_multiplier + payment_bonus + achievement_bonus
    """
    claim_id:             str
    base_amount:          Decimal
    streak_multiplier:    Decimal
    payment_bonus:        Decimal
    achievement_bonus:    Decimal
    owner_share:          Decimal
    platform_share:       Decimal
    unsplit_bonus:        Decimal = Decimal("0")
    granted_achievements: tuple = ()

    @property
    def total(self) -> Decimal:
        return self.owner_share + self.platform_share

    @classmethod
    def from_dict(cls, data: dict) -> "RewardBreakdown":
        return cls(
            claim_id=data["claim_id"],
            base_amount=to_decimal(data["base_amount"]),
            streak_multiplier=to_decimal(data["streak_multiplier"]),
            payment_bonus=to_decimal(data["payment_bonus"]),
            achievement_bonus=to_decimal(data["achievement_bonus"]),
            owner_share=to_decimal(data["owner_share"]),
            platform_share=to_decimal(data["platform_share"]),
            unsplit_bonus=to_decimal(data.get("unsplit_bonus", "0")),
            granted_achievements=tuple(data.get("granted_achievements", ())),
        )


@dataclass
class SettlementRecord(_Record):
    """One attempt (or the terminal pending entry) to settle a reference."""
    reference_id:         str
    backend_tier:         BackendTier
    status:               SettlementStatus
    owner_amount:         Decimal = Decimal("0")
    platform_amount:      Decimal = Decimal("0")
    owner_destination:    Optional[str] = None
    platform_destination: Optional[str] = None
    owner_tx_ref:         Optional[str] = None
    platform_tx_ref:      Optional[str] = None
    error:                Optional[str] = None
    id:                   str = field(default_factory=lambda: new_id("stl"))
    attempted_at:         datetime = field(default_factory=utcnow)

    def amount_for(self, share: ShareKind) -> Decimal:
        return self.owner_amount if share == ShareKind.OWNER else self.platform_amount

    def destination_for(self, share: ShareKind) -> Optional[str]:
        return self.owner_destination if share == ShareKind.OWNER else self.platform_destination

    @classmethod
    def from_dict(cls, data: dict) -> "SettlementRecord":
        return cls(
            id=data["id"],
            reference_id=data["reference_id"],
            backend_tier=BackendTier(data["backend_tier"]),
            status=SettlementStatus(data["status"]),
            owner_amount=to_decimal(data.get("owner_amount", "0")),
            platform_amount=to_decimal(data.get("platform_amount", "0")),
            owner_destination=data.get("owner_destination"),
            platform_destination=data.get("platform_destination"),
            owner_tx_ref=data.get("owner_tx_ref"),
            platform_tx_ref=data.get("platform_tx_ref"),
            error=data.get("error"),
            attempted_at=_dt(data["attempted_at"]),
        )


@dataclass
class AchievementGrant(_Record):
    owner_id:   str
    kind:       str
    amount:     Decimal
    tx_ref:     Optional[str] = None
    granted_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "AchievementGrant":
        return cls(
            owner_id=data["owner_id"],
            kind=data["kind"],
            amount=to_decimal(data["amount"]),
            tx_ref=data.get("tx_ref"),
            granted_at=_dt(data["granted_at"]),
        )


@dataclass
class Referral(_Record):
    id:               str
    referrer_id:      str
    referee_id:       str
    code:             str
    status:           ReferralStatus = ReferralStatus.PENDING
    referrer_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Referral":
        return cls(
            id=data["id"],
            referrer_id=data["referrer_id"],
            referee_id=data["referee_id"],
            code=data["code"],
            status=ReferralStatus(data["status"]),
            referrer_address=data.get("referrer_address"),
        )


@dataclass
class LedgerTransaction(_Record):
    """Append-only ledger entry. ``owner_id`` is None for platform-fund entries."""
    owner_id:     Optional[str]
    kind:         TransactionKind
    amount:       Decimal
    reference_id: str
    description:  str = ""
    tx_ref:       Optional[str] = None
    dedupe_key:   Optional[str] = None
    id:           str = field(default_factory=lambda: new_id("tx"))
    created_at:   datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerTransaction":
        return cls(
            id=data["id"],
            owner_id=data.get("owner_id"),
            kind=TransactionKind(data["kind"]),
            amount=to_decimal(data["amount"]),
            reference_id=data["reference_id"],
            description=data.get("description", ""),
            tx_ref=data.get("tx_ref"),
            dedupe_key=data.get("dedupe_key"),
            created_at=_dt(data["created_at"]),
        )


@dataclass
class ClaimResult(_Record):
    """What the orchestrator hands back to its caller for one claim."""
    claim_id:         str
    status:           ClaimStatus
    decision:         Optional[ReviewDecision] = None
    breakdown:        Optional[RewardBreakdown] = None
    settlement:       Optional[SettlementRecord] = None
    settlement_state: SettlementState = SettlementState.UNSETTLED
    achievements:     tuple = ()
    reason:           Optional[str] = None
