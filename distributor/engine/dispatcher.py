"""
EcoEarn — Distribution Dispatcher
=================================

Settles a reference (a claim id, "referral:<id>", "achievement:<owner>:<kind>")
by walking an ordered list of SettlementBackend tiers:

    treasury_pool → ledger_direct → sandbox_node → pending_manual

Guarantees:
  - Each (reference, share) has one confirmation slot in the store. Only the
    caller that wins the slot may call that share confirmed, so a share can
    never be confirmed twice even when a timed-out call lands late.
  - A reference whose shares are all confirmed short-circuits.
  - Every attempt leaves a SettlementRecord. Tier failures and timeouts fall
    through. The caller only ever sees SettlementExhausted, when even the
    pending_manual record cannot be written.
  - Tier calls run on a worker pool with a bounded wait. A call that outlives
    its wait keeps running and its outcome is persisted when it finishes.
"""

from __future__ import annotations

import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from functools import partial
from typing import Any, Dict, Optional, Sequence, Tuple

from engine.backends import SettlementBackend, SettlementResult
from engine.errors import (
    ConcurrencyConflict,
    SettlementExhausted,
    SettlementTierFailure,
    ValidationError,
)
from engine.models import (
    BackendTier,
    SettlementRecord,
    SettlementStatus,
    ShareKind,
)
from engine.store import SettlementStore

logger = logging.getLogger("ecoearn.dispatcher")

# ── Configuration ──────────────────────────────────────────────────────────────
TIER_TIMEOUT_SEC     = float(os.getenv("DISPATCH_TIER_TIMEOUT_SEC", "30"))
LOCK_CEILING_SEC     = float(os.getenv("DISPATCH_LOCK_CEILING_SEC", "120"))
DISPATCH_MAX_WORKERS = int(os.getenv("DISPATCH_MAX_WORKERS", "8"))

Shares = Dict[ShareKind, Tuple[Optional[str], Decimal]]


class DistributionDispatcher:

    def __init__(
        self,
        store: SettlementStore,
        backends: Sequence[SettlementBackend],
        tier_timeout: float = TIER_TIMEOUT_SEC,
        lock_ceiling: float = LOCK_CEILING_SEC,
        max_workers: int = DISPATCH_MAX_WORKERS,
    ):
        self.store = store
        self.backends = list(backends)
        self.lock_ceiling = lock_ceiling
        # Two share calls per tier, all of them inside one lock lease.
        budget = lock_ceiling / (2 * max(1, len(self.backends)) + 1)
        self.tier_timeout = min(tier_timeout, budget)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="settle")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # ── Public API ─────────────────────────────────────────────────────────────
    def dispatch(
        self,
        reference_id: str,
        owner_destination: Optional[str],
        owner_amount: Decimal,
        platform_destination: Optional[str],
        platform_amount: Decimal,
        high_confidence: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SettlementRecord:
        shares: Shares = {
            share: (dest, amount)
            for share, dest, amount in (
                (ShareKind.OWNER, owner_destination, owner_amount),
                (ShareKind.PLATFORM, platform_destination, platform_amount),
            )
            if amount > 0
        }
        if not shares:
            raise ValidationError(f"Nothing to settle for {reference_id}", field="amount")

        settled = self._settled_record(reference_id, shares)
        if settled is not None:
            logger.info(f"[DISPATCH] {reference_id} already confirmed; not paying again")
            return settled

        token = uuid.uuid4().hex
        if not self.store.acquire_dispatch_lock(reference_id, token, self.lock_ceiling):
            records = self.store.list_settlement_records(reference_id)
            if records:
                return records[-1]
            raise ConcurrencyConflict(f"dispatch:{reference_id}")

        try:
            settled = self._settled_record(reference_id, shares)
            if settled is not None:
                return settled
            return self._run_chain(reference_id, shares, high_confidence, metadata or {})
        finally:
            self.store.release_dispatch_lock(reference_id, token)

    def resolve_pending(
        self,
        reference_id: str,
        owner_tx_ref: Optional[str] = None,
        platform_tx_ref: Optional[str] = None,
    ) -> SettlementRecord:
        """Supply real settlement references for a pending_manual record."""
        pending = [
            r for r in self.store.list_settlement_records(reference_id)
            if r.status == SettlementStatus.PENDING
        ]
        if not pending:
            raise ValidationError(f"No pending settlement for {reference_id}", field="reference_id")
        record = pending[-1]

        open_shares: Shares = {
            share: (record.destination_for(share), record.amount_for(share))
            for share in (ShareKind.OWNER, ShareKind.PLATFORM)
            if record.amount_for(share) > 0
        }
        remaining = self._remaining(reference_id, open_shares)
        if not remaining:
            return self._settled_record(reference_id, open_shares)

        supplied = {ShareKind.OWNER: owner_tx_ref, ShareKind.PLATFORM: platform_tx_ref}
        missing = [s.value for s in remaining if not supplied[s]]
        if missing:
            raise ValidationError(f"tx ref required for {', '.join(missing)}", field="tx_ref")

        won: Shares = {}
        refs: Dict[ShareKind, str] = {}
        for share, value in remaining.items():
            if self._claim_slot(BackendTier.PENDING_MANUAL, reference_id, share, supplied[share]):
                won[share] = value
                refs[share] = supplied[share]
        if not won:
            return self._settled_record(reference_id, open_shares)

        resolved = self._record(
            BackendTier.PENDING_MANUAL, reference_id, won, SettlementStatus.CONFIRMED, refs, None
        )
        self.store.add_settlement_record(resolved)
        logger.info(f"[DISPATCH] {reference_id} resolved manually: {resolved.owner_tx_ref} / {resolved.platform_tx_ref}")
        return resolved

    # ── Internals ──────────────────────────────────────────────────────────────
    def _settled_record(self, reference_id: str, shares: Shares) -> Optional[SettlementRecord]:
        confirmed = self.store.confirmed_shares(reference_id)
        if not all(share in confirmed for share in shares):
            return None
        for record in reversed(self.store.list_settlement_records(reference_id)):
            if record.status == SettlementStatus.CONFIRMED:
                return record
        # slots taken by late completions whose records never landed
        return SettlementRecord(
            reference_id=reference_id,
            backend_tier=BackendTier.PENDING_MANUAL,
            status=SettlementStatus.CONFIRMED,
            owner_amount=shares.get(ShareKind.OWNER, (None, Decimal("0")))[1],
            platform_amount=shares.get(ShareKind.PLATFORM, (None, Decimal("0")))[1],
            owner_tx_ref=confirmed.get(ShareKind.OWNER),
            platform_tx_ref=confirmed.get(ShareKind.PLATFORM),
        )

    def _run_chain(
        self,
        reference_id: str,
        shares: Shares,
        high_confidence: bool,
        metadata: Dict[str, Any],
    ) -> SettlementRecord:
        for backend in self.backends:
            if not backend.available(high_confidence):
                logger.debug(f"[DISPATCH] {backend.tier.value} unavailable for {reference_id}")
                continue
            record = self._attempt(backend, reference_id, shares, metadata)
            if record.status == SettlementStatus.CONFIRMED:
                return record

        return self._pending_manual(reference_id, shares)

    def _remaining(self, reference_id: str, shares: Shares) -> Shares:
        confirmed = self.store.confirmed_shares(reference_id)
        return {s: v for s, v in shares.items() if s not in confirmed}

    def _attempt(
        self,
        backend: SettlementBackend,
        reference_id: str,
        shares: Shares,
        metadata: Dict[str, Any],
    ) -> SettlementRecord:
        tier = backend.tier
        remaining = self._remaining(reference_id, shares)
        tx_refs: Dict[ShareKind, str] = {}
        errors = []

        for share, (destination, amount) in remaining.items():
            if not destination:
                errors.append(f"{share.value}: no destination")
                continue
            meta = dict(metadata, reference_id=reference_id, share=share.value, tier=tier.value)
            future = self._executor.submit(backend.settle, destination, amount, meta)
            try:
                result: SettlementResult = future.result(timeout=self.tier_timeout)
            except FutureTimeout:
                errors.append(f"{share.value}: timed out after {self.tier_timeout:.1f}s")
                logger.warning(f"[DISPATCH] {tier.value} timed out on {reference_id}/{share.value}; falling through")
                future.add_done_callback(
                    partial(self._late_outcome, tier, reference_id, share, destination, amount)
                )
                continue
            except SettlementTierFailure as exc:
                errors.append(f"{share.value}: {exc}")
                logger.warning(f"[DISPATCH] {exc} on {reference_id}/{share.value}; falling through")
                continue
            except Exception as exc:
                errors.append(f"{share.value}: {exc}")
                logger.warning(f"[DISPATCH] {tier.value} failed on {reference_id}/{share.value}: {exc}")
                continue

            if not result.success:
                errors.append(f"{share.value}: {result.error or 'rejected'}")
                logger.warning(f"[DISPATCH] {tier.value} declined {reference_id}/{share.value}: {result.error}")
                continue
            if self._claim_slot(tier, reference_id, share, result.tx_ref):
                tx_refs[share] = result.tx_ref
            else:
                errors.append(f"{share.value}: already confirmed elsewhere")

        status = (
            SettlementStatus.CONFIRMED
            if remaining and len(tx_refs) == len(remaining)
            else SettlementStatus.FAILED
        )
        record = self._record(tier, reference_id, remaining, status, tx_refs, "; ".join(errors) or None)
        self._persist(record)
        return record

    def _claim_slot(self, tier: BackendTier, reference_id: str, share: ShareKind, tx_ref: str) -> bool:
        if self.store.confirm_share(reference_id, share, tx_ref):
            return True
        logger.critical(
            f"[DISPATCH] ❌ OVER-SETTLEMENT {reference_id}/{share.value}: {tier.value} paid "
            f"{tx_ref} after the share was already confirmed. Reconcile manually."
        )
        return False

    def _late_outcome(
        self,
        tier: BackendTier,
        reference_id: str,
        share: ShareKind,
        destination: str,
        amount: Decimal,
        future,
    ) -> None:
        """Persist the outcome of a tier call that finished after the dispatcher moved on."""
        one_share = {share: (destination, amount)}
        exc = future.exception()
        if exc is not None:
            record = self._record(tier, reference_id, one_share, SettlementStatus.FAILED, {}, f"late: {exc}")
        else:
            result = future.result()
            if result.success and self._claim_slot(tier, reference_id, share, result.tx_ref):
                logger.warning(f"[DISPATCH] late confirmation {reference_id}/{share.value} via {tier.value}")
                record = self._record(
                    tier, reference_id, one_share, SettlementStatus.CONFIRMED, {share: result.tx_ref}, None
                )
            else:
                error = "late: " + (result.error or "already confirmed elsewhere")
                refs = {share: result.tx_ref} if result.tx_ref else {}
                record = self._record(tier, reference_id, one_share, SettlementStatus.FAILED, refs, error)
        self._persist(record)

    def _pending_manual(self, reference_id: str, shares: Shares) -> SettlementRecord:
        remaining = self._remaining(reference_id, shares)
        record = self._record(
            BackendTier.PENDING_MANUAL,
            reference_id,
            remaining,
            SettlementStatus.PENDING if remaining else SettlementStatus.CONFIRMED,
            {},
            "all tiers failed; awaiting reconciliation" if remaining else None,
        )
        try:
            self.store.add_settlement_record(record)
        except Exception as exc:
            logger.critical(f"[DISPATCH] ❌ could not persist pending_manual for {reference_id}: {exc}")
            raise SettlementExhausted(reference_id, str(exc)) from exc
        logger.warning(f"[DISPATCH] {reference_id} parked as pending_manual")
        return record

    @staticmethod
    def _record(
        tier: BackendTier,
        reference_id: str,
        shares: Shares,
        status: SettlementStatus,
        tx_refs: Dict[ShareKind, str],
        error: Optional[str],
    ) -> SettlementRecord:
        owner = shares.get(ShareKind.OWNER, (None, Decimal("0")))
        platform = shares.get(ShareKind.PLATFORM, (None, Decimal("0")))
        return SettlementRecord(
            reference_id=reference_id,
            backend_tier=tier,
            status=status,
            owner_amount=owner[1],
            platform_amount=platform[1],
            owner_destination=owner[0],
            platform_destination=platform[0],
            owner_tx_ref=tx_refs.get(ShareKind.OWNER),
            platform_tx_ref=tx_refs.get(ShareKind.PLATFORM),
            error=error,
        )

    def _persist(self, record: SettlementRecord) -> None:
        try:
            self.store.add_settlement_record(record)
        except Exception:
            logger.exception(f"[DISPATCH] could not persist {record.backend_tier.value} record for {record.reference_id}")
