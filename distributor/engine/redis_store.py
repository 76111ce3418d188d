"""
EcoEarn — Redis-backed EngineStore

Key layout (all values JSON unless noted):
  ecoearn:claim:{id}                      Claim
  ecoearn:owner:{owner}:claims            set of claim ids
  ecoearn:decision:{id}                   ReviewDecision
  ecoearn:breakdown:{id}                  RewardBreakdown (SET NX)
  ecoearn:tx:owner:{owner}                list of LedgerTransaction
  ecoearn:tx:kind:{kind}                  list of LedgerTransaction
  ecoearn:tx:dedupe:{key}                 tx id (SET NX)
  ecoearn:grant:{owner}:{kind}            AchievementGrant
  ecoearn:quota:{owner}:{day}             set of claim ids holding a daily slot
  ecoearn:referral:{id}                   Referral
  ecoearn:referral:referee:{referee}      referral id
  ecoearn:settlement:{ref}                list of SettlementRecord
  ecoearn:settlement:{ref}:confirmed:{s}  tx ref (SET NX)
  ecoearn:lock:dispatch:{ref}             lock token (SET NX PX)

Conditional updates use SET NX or WATCH/MULTI. A WatchError means another
writer got there first; the update is re-read and re-checked a bounded
number of times.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional

import redis

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
from engine.store import EngineStore

logger = logging.getLogger("ecoearn.redis_store")

REDIS_URL    = os.getenv("REDIS_URL", "redis://localhost:6379/0")
KEY_PREFIX   = os.getenv("REDIS_KEY_PREFIX", "ecoearn")
CAS_ATTEMPTS = int(os.getenv("REDIS_CAS_ATTEMPTS", "16"))
QUOTA_TTL_SEC = int(os.getenv("REDIS_QUOTA_TTL_SEC", str(2 * 24 * 3600)))
PLATFORM_OWNER = "platform"


class RedisStore(EngineStore):

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = KEY_PREFIX):
        self.r = client or redis.Redis.from_url(REDIS_URL, decode_responses=True)
        self.prefix = prefix

    def _k(self, *parts: str) -> str:
        return ":".join((self.prefix,) + tuple(str(p) for p in parts))

    def _get_json(self, key: str) -> Optional[dict]:
        raw = self.r.get(key)
        return json.loads(raw) if raw else None

    def _cas_json(
        self,
        key: str,
        mutate: Callable[[dict], Optional[dict]],
        extra: Optional[Callable] = None,
    ) -> bool:
        """Read-modify-write ``key`` under WATCH. ``mutate`` returns None to abort."""
        for _ in range(CAS_ATTEMPTS):
            with self.r.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return False
                    updated = mutate(json.loads(raw))
                    if updated is None:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(updated, sort_keys=True))
                    if extra is not None:
                        extra(pipe)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue
        logger.debug(f"[REDIS] gave up on {key} after {CAS_ATTEMPTS} contended attempts")
        return False

    # ── Claims ────────────────────────────────────────────────────────────────
    def get_claim(self, claim_id: str) -> Optional[Claim]:
        data = self._get_json(self._k("claim", claim_id))
        return Claim.from_dict(data) if data else None

    def list_claims_by_owner(self, owner_id: str) -> List[Claim]:
        ids = sorted(self.r.smembers(self._k("owner", owner_id, "claims")))
        if not ids:
            return []
        raws = self.r.mget([self._k("claim", i) for i in ids])
        return [Claim.from_dict(json.loads(raw)) for raw in raws if raw]

    def create_claim(self, claim: Claim) -> bool:
        key = self._k("claim", claim.id)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, claim.to_json())
                pipe.sadd(self._k("owner", claim.owner_id, "claims"), claim.id)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def _update_claim_field(self, claim_id: str, field: str, value: str,
                            expected: Optional[Iterable]) -> bool:
        allowed = None if expected is None else {e.value for e in expected}

        def mutate(data: dict) -> Optional[dict]:
            if allowed is not None and data.get(field) not in allowed:
                return None
            data[field] = value
            return data

        return self._cas_json(self._k("claim", claim_id), mutate)

    def update_review_status(
        self,
        claim_id: str,
        status: ReviewStatus,
        expected: Optional[Iterable[ReviewStatus]] = None,
    ) -> bool:
        return self._update_claim_field(claim_id, "review_status", status.value, expected)

    def update_settlement_state(
        self,
        claim_id: str,
        state: SettlementState,
        expected: Optional[Iterable[SettlementState]] = None,
    ) -> bool:
        return self._update_claim_field(claim_id, "settlement_state", state.value, expected)

    def save_decision(self, decision: ReviewDecision) -> None:
        self.r.set(self._k("decision", decision.claim_id), decision.to_json())

    def get_decision(self, claim_id: str) -> Optional[ReviewDecision]:
        data = self._get_json(self._k("decision", claim_id))
        return ReviewDecision.from_dict(data) if data else None

    def save_breakdown(self, breakdown: RewardBreakdown) -> bool:
        return bool(self.r.set(self._k("breakdown", breakdown.claim_id), breakdown.to_json(), nx=True))

    def get_breakdown(self, claim_id: str) -> Optional[RewardBreakdown]:
        data = self._get_json(self._k("breakdown", claim_id))
        return RewardBreakdown.from_dict(data) if data else None

    # ── Ledger ────────────────────────────────────────────────────────────────
    def _queue_tx(self, pipe, tx: LedgerTransaction) -> None:
        payload = tx.to_json()
        pipe.rpush(self._k("tx", "owner", tx.owner_id or PLATFORM_OWNER), payload)
        pipe.rpush(self._k("tx", "kind", tx.kind.value), payload)
        if tx.dedupe_key:
            pipe.set(self._k("tx", "dedupe", tx.dedupe_key), tx.id, nx=True)

    def append_transaction(self, tx: LedgerTransaction) -> bool:
        if tx.dedupe_key and not self.r.set(self._k("tx", "dedupe", tx.dedupe_key), tx.id, nx=True):
            return False
        pipe = self.r.pipeline()
        self._queue_tx(pipe, tx)
        pipe.execute()
        return True

    def list_transactions(
        self, owner_id: str, kind: Optional[TransactionKind] = None
    ) -> List[LedgerTransaction]:
        raws = self.r.lrange(self._k("tx", "owner", owner_id), 0, -1)
        txs = [LedgerTransaction.from_dict(json.loads(raw)) for raw in raws]
        return [t for t in txs if kind is None or t.kind == kind]

    def list_transactions_by_kind(self, kind: TransactionKind) -> List[LedgerTransaction]:
        raws = self.r.lrange(self._k("tx", "kind", kind.value), 0, -1)
        return [LedgerTransaction.from_dict(json.loads(raw)) for raw in raws]

    def insert_grant(self, grant: AchievementGrant, tx: LedgerTransaction) -> bool:
        key = self._k("grant", grant.owner_id, grant.kind)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, grant.to_json())
                self._queue_tx(pipe, tx)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def get_grant(self, owner_id: str, kind: str) -> Optional[AchievementGrant]:
        data = self._get_json(self._k("grant", owner_id, kind))
        return AchievementGrant.from_dict(data) if data else None

    def reserve_daily_action(
        self, owner_id: str, day: date, claim_id: str, limit: Optional[int]
    ) -> bool:
        key = self._k("quota", owner_id, day.isoformat())
        for _ in range(CAS_ATTEMPTS):
            with self.r.pipeline() as pipe:
                try:
                    pipe.watch(key)
                    if pipe.sismember(key, claim_id):
                        pipe.unwatch()
                        return True
                    if limit is not None and pipe.scard(key) >= limit:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.sadd(key, claim_id)
                    pipe.expire(key, QUOTA_TTL_SEC)
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue
        logger.debug(f"[REDIS] gave up on {key} after {CAS_ATTEMPTS} contended attempts")
        return False

    # ── Referrals ─────────────────────────────────────────────────────────────
    def create_referral(self, referral: Referral) -> bool:
        key = self._k("referral", referral.id)
        index = self._k("referral", "referee", referral.referee_id)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key, index)
                if pipe.exists(key, index):
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, referral.to_json())
                pipe.set(index, referral.id)
                pipe.execute()
                return True
            except redis.WatchError:
                return False

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        data = self._get_json(self._k("referral", referral_id))
        return Referral.from_dict(data) if data else None

    def get_referral_by_referee(self, referee_id: str) -> Optional[Referral]:
        referral_id = self.r.get(self._k("referral", "referee", referee_id))
        return self.get_referral(referral_id) if referral_id else None

    @staticmethod
    def _status_swap(from_status: ReferralStatus, to_status: ReferralStatus):
        def mutate(data: dict) -> Optional[dict]:
            if data.get("status") != from_status.value:
                return None
            data["status"] = to_status.value
            return data
        return mutate

    def transition_referral(
        self, referral_id: str, from_status: ReferralStatus, to_status: ReferralStatus
    ) -> bool:
        return self._cas_json(self._k("referral", referral_id), self._status_swap(from_status, to_status))

    def complete_referral_reward(
        self, referral_id: str, transactions: List[LedgerTransaction]
    ) -> bool:
        def queue(pipe) -> None:
            for tx in transactions:
                self._queue_tx(pipe, tx)

        return self._cas_json(
            self._k("referral", referral_id),
            self._status_swap(ReferralStatus.PROCESSING, ReferralStatus.REWARDED),
            extra=queue,
        )

    # ── Settlement ────────────────────────────────────────────────────────────
    def add_settlement_record(self, record: SettlementRecord) -> None:
        self.r.rpush(self._k("settlement", record.reference_id), record.to_json())

    def list_settlement_records(self, reference_id: str) -> List[SettlementRecord]:
        raws = self.r.lrange(self._k("settlement", reference_id), 0, -1)
        return [SettlementRecord.from_dict(json.loads(raw)) for raw in raws]

    def confirm_share(self, reference_id: str, share: ShareKind, tx_ref: str) -> bool:
        key = self._k("settlement", reference_id, "confirmed", share.value)
        return bool(self.r.set(key, tx_ref, nx=True))

    def confirmed_shares(self, reference_id: str) -> Dict[ShareKind, str]:
        shares = list(ShareKind)
        values = self.r.mget([self._k("settlement", reference_id, "confirmed", s.value) for s in shares])
        return {s: v for s, v in zip(shares, values) if v}

    def acquire_dispatch_lock(self, reference_id: str, token: str, ttl_seconds: float) -> bool:
        key = self._k("lock", "dispatch", reference_id)
        return bool(self.r.set(key, token, nx=True, px=max(1, int(ttl_seconds * 1000))))

    def release_dispatch_lock(self, reference_id: str, token: str) -> None:
        key = self._k("lock", "dispatch", reference_id)
        with self.r.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != token:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
            except redis.WatchError:
                logger.debug(f"[REDIS] lock {key} changed hands before release")
