"""
EcoEarn — Human Review Sink

One-way webhook that tells the review spreadsheet a claim needs a human.
Delivery runs in the background; the engine has already persisted its
ReviewDecision and never waits on, or reacts to, the outcome here.
"""

from __future__ import annotations

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

import requests

from engine.models import Claim, ReviewDecision

logger = logging.getLogger("ecoearn.review_sink")

REVIEW_WEBHOOK_URL     = os.getenv("MANUAL_REVIEW_WEBHOOK_URL", "")
REVIEW_ACTION_BASE_URL = os.getenv("REVIEW_ACTION_BASE_URL", "http://localhost:8000")
WEBHOOK_MAX_RETRIES    = int(os.getenv("MANUAL_REVIEW_MAX_RETRIES", "3"))
WEBHOOK_TIMEOUT_SEC    = float(os.getenv("MANUAL_REVIEW_TIMEOUT_SEC", "10"))
BACKOFF_BASE_SEC       = 1.0
BACKOFF_CAP_SEC        = 5.0


def backoff_delay(attempt: int) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return min(BACKOFF_BASE_SEC * (2 ** (attempt - 1)), BACKOFF_CAP_SEC)


def build_review_payload(claim: Claim, decision: ReviewDecision, action_base_url: str) -> dict:
    return {
        "event_type":    "manual_review",
        "claim_id":      claim.id,
        "owner_id":      claim.owner_id,
        "merchant":      claim.merchant_ref,
        "amount":        None if claim.amount is None else str(claim.amount),
        "occurred_at":   claim.occurred_at.isoformat(),
        "category":      claim.ai_category.value,
        "confidence":    decision.confidence_used,
        "reason_codes":  list(decision.reason_codes),
        "media_ref":     claim.media_ref,
        "review_action": f"{action_base_url.rstrip('/')}/api/v1/claims/{claim.id}/review",
    }


class ReviewSink:
    """Default sink: nowhere to send, so it only logs."""

    def notify(self, claim: Claim, decision: ReviewDecision) -> Optional[Future]:
        logger.info(f"[REVIEW SINK] claim {claim.id} awaits manual review (no webhook configured)")
        return None


class WebhookReviewSink(ReviewSink):

    def __init__(
        self,
        url: str = REVIEW_WEBHOOK_URL,
        action_base_url: str = REVIEW_ACTION_BASE_URL,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        timeout: float = WEBHOOK_TIMEOUT_SEC,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.url = url
        self.action_base_url = action_base_url
        self.max_retries = max_retries
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="review-sink")

    def notify(self, claim: Claim, decision: ReviewDecision) -> Optional[Future]:
        payload = build_review_payload(claim, decision, self.action_base_url)
        return self._executor.submit(self.deliver, payload)

    def deliver(self, payload: dict) -> bool:
        claim_id = payload.get("claim_id")
        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self.session.post(
                    self.url,
                    json=dict(payload, retry_count=attempt - 1),
                    headers={
                        "X-Webhook-Source": "ecoearn-engine",
                        "X-Event-Type":     "manual_review",
                        "X-Retry-Count":    str(attempt - 1),
                    },
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                logger.info(f"[REVIEW SINK] ✅ claim {claim_id} sent for manual review")
                return True
            except requests.RequestException as exc:
                logger.warning(
                    f"[REVIEW SINK] attempt {attempt}/{self.max_retries} for claim {claim_id} failed: {exc}"
                )
            if attempt < self.max_retries:
                self.sleep(backoff_delay(attempt))

        logger.error(f"[REVIEW SINK] ❌ claim {claim_id} not delivered after {self.max_retries} attempts")
        return False


def build_review_sink() -> ReviewSink:
    if REVIEW_WEBHOOK_URL:
        return WebhookReviewSink()
    return ReviewSink()
