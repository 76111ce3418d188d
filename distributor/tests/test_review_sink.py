"""
EcoEarn — Review sink and vision adapter tests

Coverage:
  - Webhook payload carries the reviewer action URL
  - Retries with capped exponential backoff, then gives up
  - Delivery runs in the background and never raises into the engine
  - Vision output sanitised; classifier outage degrades to a held claim
"""

from decimal import Decimal
from unittest import mock

import pytest
import requests

from helpers import make_claim

from engine.models import ClaimCategory, ReviewDecision, ReviewOutcome
from engine.review_sink import (
    ReviewSink,
    WebhookReviewSink,
    backoff_delay,
    build_review_payload,
)
from engine.vision import VisionClassifier, parse_vision_response


def _decision(claim):
    return ReviewDecision(
        claim_id=claim.id,
        outcome=ReviewOutcome.MANUAL_REVIEW,
        reason_codes=("confidence_below_threshold",),
        confidence_used=0.4,
    )


class TestBackoff:

    @pytest.mark.parametrize("attempt, delay", [(1, 1.0), (2, 2.0), (3, 4.0), (4, 5.0), (10, 5.0)])
    def test_capped_exponential(self, attempt, delay):
        assert backoff_delay(attempt) == delay


class TestWebhookSink:

    def setup_method(self):
        self.session = mock.MagicMock()
        self.sleeps = []
        self.sink = WebhookReviewSink(
            url="https://hooks.example.test/review",
            action_base_url="https://engine.example.test/",
            max_retries=3,
            session=self.session,
            sleep=self.sleeps.append,
        )
        self.claim = make_claim(id="held-1", amount=Decimal("12.50"))

    def test_payload_shape(self):
        payload = build_review_payload(self.claim, _decision(self.claim), "https://engine.example.test/")
        assert payload["claim_id"] == "held-1"
        assert payload["amount"] == "12.50"
        assert payload["reason_codes"] == ["confidence_below_threshold"]
        assert payload["review_action"] == "https://engine.example.test/api/v1/claims/held-1/review"

    def test_delivers_first_time(self):
        assert self.sink.deliver({"claim_id": "held-1"})
        assert self.session.post.call_count == 1
        headers = self.session.post.call_args.kwargs["headers"]
        assert headers["X-Event-Type"] == "manual_review"
        assert headers["X-Retry-Count"] == "0"
        assert self.sleeps == []

    def test_retries_then_succeeds(self):
        ok = mock.MagicMock()
        self.session.post.side_effect = [requests.ConnectionError("down"), ok]
        assert self.sink.deliver({"claim_id": "held-1"})
        assert self.session.post.call_count == 2
        assert self.sleeps == [1.0]

    def test_gives_up_after_max_retries(self):
        self.session.post.side_effect = requests.Timeout("slow")
        assert not self.sink.deliver({"claim_id": "held-1"})
        assert self.session.post.call_count == 3
        assert self.sleeps == [1.0, 2.0]

    def test_http_error_status_retried(self):
        bad = mock.MagicMock()
        bad.raise_for_status.side_effect = requests.HTTPError("500")
        self.session.post.return_value = bad
        assert not self.sink.deliver({"claim_id": "held-1"})
        assert self.session.post.call_count == 3

    def test_notify_runs_in_background(self):
        future = self.sink.notify(self.claim, _decision(self.claim))
        assert future.result(timeout=5) is True

    def test_default_sink_only_logs(self):
        assert ReviewSink().notify(self.claim, _decision(self.claim)) is None


class TestVision:

    def test_parse_sanitises_fields(self):
        result = parse_vision_response({
            "confidence": "1.7",
            "category": "Pre_Owned",
            "extracted_amount": "19.999",
            "extracted_merchant": "  Half   Price Books ",
            "card_last_four": "42x2",
            "flags": "timeout_fallback",
        })
        assert result.confidence == 1.0
        assert result.category == ClaimCategory.PRE_OWNED
        assert result.extracted_amount == Decimal("20.00")
        assert result.extracted_merchant == "Half Price Books"
        assert result.card_last_four is None
        assert result.flags == frozenset({"timeout_fallback"})

    def test_parse_rejects_garbage(self):
        result = parse_vision_response(["not", "a", "dict"])
        assert result.confidence == 0.0
        assert "malformed_response" in result.flags

    def test_negative_or_nan_amount_dropped(self):
        assert parse_vision_response({"extracted_amount": "-3"}).extracted_amount is None
        assert parse_vision_response({"extracted_amount": "NaN"}).extracted_amount is None
        assert parse_vision_response({"category": "spaceship"}).category == ClaimCategory.UNKNOWN

    def test_disabled_classifier_flags_test_mode(self):
        assert VisionClassifier(url="").classify("media/x.jpg").flags == frozenset({"test_mode"})

    def test_outage_degrades_to_timeout_fallback(self):
        session = mock.MagicMock()
        session.post.side_effect = requests.Timeout("no answer")
        result = VisionClassifier(url="https://vision.example.test", session=session).classify("m.jpg")
        assert result.confidence == 0.0
        assert result.flags == frozenset({"timeout_fallback"})

    def test_classifier_success(self):
        session = mock.MagicMock()
        session.post.return_value.json.return_value = {"confidence": 0.91, "category": "used_books"}
        result = VisionClassifier(url="https://vision.example.test", session=session).classify("m.jpg")
        assert result.confidence == pytest.approx(0.91)
        assert result.category == ClaimCategory.USED_BOOKS
