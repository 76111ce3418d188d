"""
EcoEarn — Settlement backends (one per dispatcher tier)
=======================================================

Every tier exposes the same capability:

    settle(destination, amount, metadata) -> SettlementResult

  treasury_pool  — pool contract pays out under delegated app authority
  ledger_direct  — reward token transfer signed by the distributor key
  sandbox_node   — same transfer against a local/test chain, never in production

The pending_manual tier has no backend: it is the dispatcher's own durable
fallback record.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import Web3

from engine.errors import SettlementTierFailure
from engine.models import BackendTier

logger = logging.getLogger("ecoearn.backends")

# ── Configuration ──────────────────────────────────────────────────────────────
ENVIRONMENT         = os.getenv("ECOEARN_ENV", "development").lower()
TOKEN_DECIMALS      = int(os.getenv("REWARD_TOKEN_DECIMALS", "18"))
RPC_TIMEOUT_SEC     = float(os.getenv("SETTLEMENT_RPC_TIMEOUT_SEC", "10"))
RECEIPT_TIMEOUT_SEC = float(os.getenv("SETTLEMENT_RECEIPT_TIMEOUT_SEC", "20"))

ERC20_TRANSFER_ABI = [
    {
        "inputs": [
            {"internalType": "address", "name": "to",     "type": "address"},
            {"internalType": "uint256", "name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]

TREASURY_POOL_ABI = [
    {
        "inputs": [
            {"internalType": "bytes32", "name": "appId",    "type": "bytes32"},
            {"internalType": "uint256", "name": "amount",   "type": "uint256"},
            {"internalType": "address", "name": "receiver", "type": "address"},
            {"internalType": "string",  "name": "proof",    "type": "string"},
        ],
        "name": "distributeReward",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    }
]


@dataclass
class SettlementResult:
    success: bool
    tx_ref:  Optional[str] = None
    error:   Optional[str] = None


def to_base_units(amount: Decimal, decimals: int = TOKEN_DECIMALS) -> int:
    return int((amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


class SettlementBackend(ABC):
    tier: BackendTier

    @abstractmethod
    def available(self, high_confidence: bool) -> bool:
        """Whether this tier may be attempted for the current dispatch."""

    @abstractmethod
    def settle(self, destination: str, amount: Decimal, metadata: Dict[str, Any]) -> SettlementResult:
        """Move ``amount`` to ``destination``. May raise; the dispatcher treats that as failure."""


class _ContractBackend(SettlementBackend):
    """Shared build → sign → send → wait path for signer-based tiers."""

    def __init__(self, rpc_url: str, contract_address: str, abi: list, private_key: str):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": RPC_TIMEOUT_SEC}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=abi,
        )
        self.account = Account.from_key(private_key)
        # one signer, one nonce sequence
        self._nonce_lock = threading.Lock()

    def _transact(self, func) -> SettlementResult:
        if not self.w3.is_connected():
            raise SettlementTierFailure(self.tier.value, "RPC node unreachable")
        sender = self.account.address
        with self._nonce_lock:
            tx = func.build_transaction({
                "from":  sender,
                "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
            })
            signed = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_ref = Web3.to_hex(tx_hash)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=RECEIPT_TIMEOUT_SEC)
        if receipt.get("status") != 1:
            return SettlementResult(False, tx_ref, f"transaction reverted ({tx_ref})")
        logger.info(f"[{self.tier.value.upper()}] ✅ confirmed {tx_ref}")
        return SettlementResult(True, tx_ref)


class TreasuryPoolBackend(_ContractBackend):
    tier = BackendTier.TREASURY_POOL

    def __init__(self, rpc_url: str, pool_address: str, app_id: str, private_key: str):
        super().__init__(rpc_url, pool_address, TREASURY_POOL_ABI, private_key)
        self.app_id = Web3.to_bytes(hexstr=app_id)

    def available(self, high_confidence: bool) -> bool:
        return True

    def settle(self, destination: str, amount: Decimal, metadata: Dict[str, Any]) -> SettlementResult:
        proof = json.dumps(metadata, sort_keys=True, default=str)
        func = self.contract.functions.distributeReward(
            self.app_id,
            to_base_units(amount),
            Web3.to_checksum_address(destination),
            proof,
        )
        return self._transact(func)


class LedgerDirectBackend(_ContractBackend):
    tier = BackendTier.LEDGER_DIRECT

    def __init__(self, rpc_url: str, token_address: str, private_key: str):
        super().__init__(rpc_url, token_address, ERC20_TRANSFER_ABI, private_key)

    def available(self, high_confidence: bool) -> bool:
        return high_confidence

    def settle(self, destination: str, amount: Decimal, metadata: Dict[str, Any]) -> SettlementResult:
        func = self.contract.functions.transfer(
            Web3.to_checksum_address(destination),
            to_base_units(amount),
        )
        return self._transact(func)


class SandboxNodeBackend(LedgerDirectBackend):
    tier = BackendTier.SANDBOX_NODE

    def __init__(self, rpc_url: str, token_address: str, private_key: str,
                 environment: str = ENVIRONMENT):
        super().__init__(rpc_url, token_address, private_key)
        self.environment = environment

    def available(self, high_confidence: bool) -> bool:
        return self.environment != "production"


def build_backends(environment: str = ENVIRONMENT) -> List[SettlementBackend]:
    """Tier chain in dispatch order, built from whatever credentials are configured."""
    backends: List[SettlementBackend] = []
    rpc_url   = os.getenv("SETTLEMENT_RPC_URL", "")
    token     = os.getenv("REWARD_TOKEN_ADDRESS", "")
    signer    = os.getenv("DISTRIBUTOR_PRIVATE_KEY", "")

    pool      = os.getenv("TREASURY_POOL_ADDRESS", "")
    app_id    = os.getenv("TREASURY_APP_ID", "")
    pool_key  = os.getenv("TREASURY_PRIVATE_KEY", "") or signer
    use_pool  = os.getenv("USE_TREASURY_POOL", "true").lower() == "true"

    if use_pool and rpc_url and pool and app_id and pool_key:
        backends.append(TreasuryPoolBackend(rpc_url, pool, app_id, pool_key))
    else:
        logger.warning("[BACKENDS] treasury_pool tier disabled (pool credentials not configured)")

    if rpc_url and token and signer:
        backends.append(LedgerDirectBackend(rpc_url, token, signer))
    else:
        logger.warning("[BACKENDS] ledger_direct tier disabled (signer credentials not configured)")

    sandbox_rpc   = os.getenv("SANDBOX_RPC_URL", "")
    sandbox_token = os.getenv("SANDBOX_TOKEN_ADDRESS", "")
    sandbox_key   = os.getenv("SANDBOX_PRIVATE_KEY", "")
    if environment != "production" and sandbox_rpc and sandbox_token and sandbox_key:
        backends.append(SandboxNodeBackend(sandbox_rpc, sandbox_token, sandbox_key, environment))

    logger.info(f"[BACKENDS] tier chain: {[b.tier.value for b in backends] + ['pending_manual']}")
    return backends
