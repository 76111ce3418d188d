"""
EcoEarn — Vision classifier adapter.

The classifier grades a receipt image and guesses merchant, amount and
category. Its output is advisory: every field is sanitised here and a failed
call degrades to a zero-confidence result carrying the ``timeout_fallback``
flag, which the Review Router holds for a human.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import requests

from engine.models import ClaimCategory, to_decimal
from engine.review_router import sanitize_confidence

logger = logging.getLogger("ecoearn.vision")

VISION_API_URL     = os.getenv("VISION_API_URL", "")
VISION_TIMEOUT_SEC = float(os.getenv("VISION_TIMEOUT_SEC", "40"))
MAX_FLAGS          = 16


@dataclass
class VisionResult:
    confidence:         float = 0.0
    category:           ClaimCategory = ClaimCategory.UNKNOWN
    extracted_amount:   Optional[Decimal] = None
    extracted_merchant: Optional[str] = None
    payment_method:     Optional[str] = None
    card_last_four:     Optional[str] = None
    flags:              frozenset = field(default_factory=frozenset)


def _clean_str(value: Any, limit: int = 200) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())[:limit]
    return text or None


def _clean_amount(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = to_decimal(value)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return amount.quantize(Decimal("0.01"))


def parse_vision_response(data: Any) -> VisionResult:
    if not isinstance(data, dict):
        return VisionResult(flags=frozenset({"malformed_response"}))

    confidence, _ = sanitize_confidence(data.get("confidence"))
    raw_flags = data.get("flags") or []
    if not isinstance(raw_flags, (list, tuple, set)):
        raw_flags = [raw_flags]
    flags = frozenset(f for f in (_clean_str(x, 64) for x in list(raw_flags)[:MAX_FLAGS]) if f)

    last_four = _clean_str(data.get("card_last_four"), 4)
    if last_four and not last_four.isdigit():
        last_four = None

    return VisionResult(
        confidence=confidence,
        category=ClaimCategory.parse(data.get("category")),
        extracted_amount=_clean_amount(data.get("extracted_amount")),
        extracted_merchant=_clean_str(data.get("extracted_merchant")),
        payment_method=_clean_str(data.get("payment_method"), 32),
        card_last_four=last_four,
        flags=flags,
    )


class VisionClassifier:

    def __init__(self, url: str = VISION_API_URL, timeout: float = VISION_TIMEOUT_SEC,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def classify(self, media_ref: str) -> VisionResult:
        if not self.enabled:
            return VisionResult(flags=frozenset({"test_mode"}))
        try:
            resp = self.session.post(self.url, json={"media_ref": media_ref}, timeout=self.timeout)
            resp.raise_for_status()
            result = parse_vision_response(resp.json())
        except (requests.RequestException, ValueError) as exc:
            logger.warning(f"[VISION] classifier unavailable for {media_ref}: {exc}")
            return VisionResult(flags=frozenset({"timeout_fallback"}))

        logger.info(
            f"[VISION] {media_ref}: confidence={result.confidence:.2f} "
            f"category={result.category.value} merchant={result.extracted_merchant}"
        )
        return result
