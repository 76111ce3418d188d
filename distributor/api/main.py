"""
EcoEarn — Reward Engine API Gateway
FastAPI server exposing the claim orchestrator to the app backend and the
manual-review spreadsheet.

Engine calls run in a worker thread: if a client disconnects mid-request the
coroutine is dropped but the thread, and any settlement it started, runs to
completion and persists its records.
"""

import logging
import os
import time
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field
from dotenv import load_dotenv
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
import uvicorn

load_dotenv()

from engine.backends import build_backends
from engine.dispatcher import DistributionDispatcher
from engine.errors import (
    DuplicateClaim,
    ReconciliationRequired,
    SettlementExhausted,
    ValidationError,
)
from engine.memory_store import MemoryStore
from engine.models import Claim, ClaimCategory, HumanVerdict, Referral, new_id
from engine.orchestrator import PLATFORM_FUND_ADDRESS, ClaimOrchestrator
from engine.referrals import ReferralStateMachine
from engine.review_sink import build_review_sink
from engine.vision import VisionClassifier

# ─── Setup ────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s [%(levelname)s] ECOEARN :: %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
log = logging.getLogger("ecoearn.api")

DEFAULT_API_KEY = "ecoearn-dev-key-change-in-prod"
ENGINE_API_KEY  = os.getenv("ENGINE_API_KEY", DEFAULT_API_KEY)
API_KEY_HEADER  = APIKeyHeader(name="X-EcoEarn-Engine-Key", auto_error=True)
STORE_BACKEND   = os.getenv("STORE_BACKEND", "memory").lower()
ENGINE_HOST     = os.getenv("ENGINE_HOST", "0.0.0.0")
ENGINE_PORT     = int(os.getenv("ENGINE_PORT", "8000"))

# Limit configurable via env: e.g. RATE_LIMIT_CLAIMS="10/minute"
RATE_LIMIT_CLAIMS = os.getenv("RATE_LIMIT_CLAIMS", "10/minute")
limiter = Limiter(key_func=get_remote_address)


def _build_store():
    if STORE_BACKEND == "redis":
        from engine.redis_store import RedisStore
        return RedisStore()
    return MemoryStore()


store      = _build_store()
backends   = build_backends()
dispatcher = DistributionDispatcher(store, backends)
referrals  = ReferralStateMachine(store, store, dispatcher, PLATFORM_FUND_ADDRESS or None)
vision     = VisionClassifier()
orchestrator = ClaimOrchestrator(
    store,
    dispatcher,
    review_sink=build_review_sink(),
    referrals=referrals,
)

app = FastAPI(
    title="EcoEarn — Reward Decision & Distribution Engine",
    description="Decides, prices and settles proof-of-activity receipt rewards",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# ─── Startup Validation ───────────────────────────────────────────────────────
@app.on_event("startup")
async def _startup_validation():
    warnings_found = []

    if ENGINE_API_KEY == DEFAULT_API_KEY:
        warnings_found.append(
            f"DEFAULT API KEY IN USE ('{DEFAULT_API_KEY}'). "
            "Set a strong ENGINE_API_KEY before going to production."
        )
    if not PLATFORM_FUND_ADDRESS:
        warnings_found.append(
            "NO PLATFORM_FUND_ADDRESS SET. Platform shares cannot settle and will park as pending_manual."
        )
    if not backends:
        warnings_found.append(
            "NO SETTLEMENT TIERS CONFIGURED. Every payout will park as pending_manual until reconciled."
        )
    if STORE_BACKEND != "redis":
        warnings_found.append("IN-MEMORY STORE IN USE. Claims and settlements are lost on restart.")

    for w in warnings_found:
        log.critical(f"\n{'='*70}\n⚠️  CONFIG WARNING: {w}\n{'='*70}")

    if not warnings_found:
        log.info("✅ Startup validation passed.")


# ─── CORS ─────────────────────────────────────────────────────────────────────
_raw_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
ALLOWED_ORIGINS: List[str] = [o.strip() for o in _raw_origins.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ─── Auth ─────────────────────────────────────────────────────────────────────
async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    if api_key != ENGINE_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid engine API key",
        )
    return api_key


# ─── Request Models ───────────────────────────────────────────────────────────
class ClaimRequest(BaseModel):
    claim_id:       Optional[str]     = Field(default=None, description="Client id; resubmitting it is safe")
    owner_id:       str
    owner_address:  Optional[str]     = None
    merchant:       Optional[str]     = None
    amount:         Optional[Decimal] = None
    occurred_at:    date
    media_ref:      str               = ""
    media_hash:     Optional[str]     = None
    ai_confidence:  Optional[float]   = Field(default=None, description="Omit to ask the vision classifier")
    ai_category:    Optional[str]     = None
    ai_flags:       List[str]         = Field(default_factory=list)
    payment_method: Optional[str]     = None
    card_last_four: Optional[str]     = None


class ReviewVerdictRequest(BaseModel):
    verdict:  HumanVerdict
    reviewer: Optional[str] = None


class ReferralRequest(BaseModel):
    referrer_id:      str
    referee_id:       str
    code:             str
    referrer_address: Optional[str] = None


class ResolveSettlementRequest(BaseModel):
    owner_tx_ref:    Optional[str] = None
    platform_tx_ref: Optional[str] = None


# ─── Helpers ──────────────────────────────────────────────────────────────────
def _to_claim(body: ClaimRequest) -> Claim:
    merchant, amount = body.merchant, body.amount
    confidence, category = body.ai_confidence, body.ai_category
    flags = set(body.ai_flags)
    payment_method, card_last_four = body.payment_method, body.card_last_four

    if confidence is None:
        graded = vision.classify(body.media_ref)
        confidence = graded.confidence
        category = category or graded.category.value
        merchant = merchant or graded.extracted_merchant
        amount = amount if amount is not None else graded.extracted_amount
        payment_method = payment_method or graded.payment_method
        card_last_four = card_last_four or graded.card_last_four
        flags |= graded.flags

    return Claim(
        id=body.claim_id or new_id("clm"),
        owner_id=body.owner_id,
        merchant_ref=merchant,
        amount=amount,
        occurred_at=body.occurred_at,
        media_ref=body.media_ref,
        ai_confidence=confidence,
        ai_category=ClaimCategory.parse(category),
        raw_ai_flags=frozenset(flags),
        owner_address=body.owner_address,
        media_hash=body.media_hash,
        payment_method=payment_method,
        card_last_four=card_last_four,
    )


async def _call_engine(fn, *args):
    try:
        return await run_in_threadpool(fn, *args)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except DuplicateClaim as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "message":            str(exc),
                "colliding_claim_id": exc.colliding_claim_id,
                "score":              exc.score,
                "factors":            list(exc.factors),
            },
        )
    except SettlementExhausted as exc:
        log.critical(f"[API] {exc}")
        raise HTTPException(status_code=503, detail="Settlement storage unavailable; retry later")
    except ReconciliationRequired as exc:
        log.critical(f"[API] {exc}")
        raise HTTPException(status_code=500, detail=str(exc))


# ─── Routes ───────────────────────────────────────────────────────────────────
@app.get("/health")
async def health():
    return {
        "status":        "operational",
        "store":         STORE_BACKEND,
        "tiers":         [b.tier.value for b in backends] + ["pending_manual"],
        "version":       "1.0.0",
        "timestamp":     int(time.time()),
    }


@app.post("/api/v1/claims", summary="Submit a receipt claim")
@limiter.limit(RATE_LIMIT_CLAIMS)
async def submit_claim(
    request: Request,                          # required by slowapi
    body:    ClaimRequest,
    api_key: str = Security(verify_api_key),
) -> Dict[str, Any]:
    t_start = time.perf_counter()
    claim = await run_in_threadpool(_to_claim, body)
    result = await _call_engine(orchestrator.submit, claim)
    log.info(
        f"[API] claim {result.claim_id} → {result.status.value} "
        f"({(time.perf_counter() - t_start) * 1000:.0f} ms)"
    )
    return result.to_dict()


@app.get("/api/v1/claims/{claim_id}", summary="Current state of a claim")
async def get_claim(claim_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    result = await _call_engine(orchestrator.get_result, claim_id)
    return result.to_dict()


@app.post("/api/v1/claims/{claim_id}/review", summary="Reviewer verdict for a held claim")
async def review_claim(
    claim_id: str,
    body:     ReviewVerdictRequest,
    api_key:  str = Security(verify_api_key),
) -> Dict[str, Any]:
    log.info(f"[API] reviewer {body.reviewer or 'unknown'} → {body.verdict.value} on {claim_id}")
    result = await _call_engine(orchestrator.redecide, claim_id, body.verdict)
    return result.to_dict()


@app.post("/api/v1/claims/{claim_id}/settle", summary="Retry settlement of an approved claim")
async def settle_claim(claim_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    result = await _call_engine(orchestrator.retry_settlement, claim_id)
    return result.to_dict()


@app.post("/api/v1/referrals", summary="Register a referral")
async def create_referral(body: ReferralRequest, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    referral = Referral(
        id=new_id("ref"),
        referrer_id=body.referrer_id,
        referee_id=body.referee_id,
        code=body.code,
        referrer_address=body.referrer_address,
    )
    if not await run_in_threadpool(store.create_referral, referral):
        raise HTTPException(status_code=409, detail="Referee already has a referral")
    return referral.to_dict()


@app.post("/api/v1/referrals/{referee_id}/process", summary="Trigger referral payout check")
async def process_referral(referee_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    outcome = await _call_engine(referrals.process, referee_id)
    return {"referee_id": referee_id, "outcome": outcome.value}


@app.get("/api/v1/settlements/{reference_id}", summary="Settlement records for a reference")
async def get_settlements(reference_id: str, api_key: str = Security(verify_api_key)) -> Dict[str, Any]:
    records = await run_in_threadpool(store.list_settlement_records, reference_id)
    confirmed = await run_in_threadpool(store.confirmed_shares, reference_id)
    return {
        "reference_id": reference_id,
        "confirmed":    {share.value: ref for share, ref in confirmed.items()},
        "records":      [r.to_dict() for r in records],
    }


@app.post("/api/v1/settlements/{reference_id}/resolve", summary="Supply real tx refs for a pending payout")
async def resolve_settlement(
    reference_id: str,
    body:         ResolveSettlementRequest,
    api_key:      str = Security(verify_api_key),
) -> Dict[str, Any]:
    record = await _call_engine(
        orchestrator.resolve_settlement, reference_id, body.owner_tx_ref, body.platform_tx_ref
    )
    return record.to_dict()


def serve() -> None:
    uvicorn.run(app, host=ENGINE_HOST, port=ENGINE_PORT, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    serve()
