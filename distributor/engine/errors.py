"""
EcoEarn — Engine error taxonomy.

Only ValidationError, DuplicateClaim, SettlementExhausted and
ReconciliationRequired ever reach a caller. SettlementTierFailure is absorbed
by the dispatcher and ConcurrencyConflict by whoever lost the race.
A claim awaiting a human is a result state, not an exception.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ValidationError(ValueError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateClaim(ValueError):
    def __init__(self, claim_id: str, colliding_claim_id: str, score: int, factors: Sequence[str] = ()):
        super().__init__(
            f"Claim {claim_id} duplicates {colliding_claim_id} (similarity {score})"
        )
        self.claim_id = claim_id
        self.colliding_claim_id = colliding_claim_id
        self.score = score
        self.factors = tuple(factors)


class SettlementTierFailure(RuntimeError):
    def __init__(self, tier: str, message: str):
        super().__init__(f"[{tier}] {message}")
        self.tier = tier


class SettlementExhausted(RuntimeError):
    """Every tier failed and the pending_manual record could not be written."""

    def __init__(self, reference_id: str, message: str):
        super().__init__(f"Settlement exhausted for {reference_id}: {message}")
        self.reference_id = reference_id


class ConcurrencyConflict(RuntimeError):
    def __init__(self, resource: str):
        super().__init__(f"Concurrent update lost on {resource}")
        self.resource = resource


class ReconciliationRequired(RuntimeError):
    """Value moved on the ledger but the bookkeeping write did not land."""

    def __init__(self, reference_id: str, message: str, tx_refs: Sequence[str] = ()):
        super().__init__(f"Manual reconciliation needed for {reference_id}: {message}")
        self.reference_id = reference_id
        self.tx_refs = tuple(tx_refs)
