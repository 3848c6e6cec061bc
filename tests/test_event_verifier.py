from __future__ import annotations

import json
import time

import pytest

from billing_sync.domain.errors import MalformedEvent, SignatureInvalid
from billing_sync.services.event_verifier import EventVerifier

from conftest import WEBHOOK_SECRET, event_body, sign, subscription_object


@pytest.fixture
def verifier() -> EventVerifier:
    return EventVerifier(WEBHOOK_SECRET)


def test_valid_signature_returns_parsed_event(verifier: EventVerifier) -> None:
    body = event_body("customer.subscription.updated", subscription_object(), event_id="evt_ok")

    event = verifier.verify(body, sign(body))

    assert event.id == "evt_ok"
    assert event.type == "customer.subscription.updated"
    assert event.data_object["id"] == "sub_1"


def test_missing_header_rejected(verifier: EventVerifier) -> None:
    body = event_body("customer.subscription.updated", subscription_object())

    with pytest.raises(SignatureInvalid):
        verifier.verify(body, None)


def test_wrong_secret_rejected(verifier: EventVerifier) -> None:
    body = event_body("customer.subscription.updated", subscription_object())

    with pytest.raises(SignatureInvalid):
        verifier.verify(body, sign(body, secret="whsec_other"))


def test_signature_covers_exact_bytes(verifier: EventVerifier) -> None:
    body = event_body("customer.subscription.updated", subscription_object())
    header = sign(body)
    # Same JSON document, different bytes.
    reformatted = json.dumps(json.loads(body), indent=2).encode("utf-8")

    with pytest.raises(SignatureInvalid):
        verifier.verify(reformatted, header)


def test_expired_timestamp_rejected() -> None:
    verifier = EventVerifier(WEBHOOK_SECRET, tolerance=60)
    body = event_body("customer.subscription.updated", subscription_object())

    with pytest.raises(SignatureInvalid):
        verifier.verify(body, sign(body, timestamp=int(time.time()) - 3600))


def test_non_utf8_body_rejected(verifier: EventVerifier) -> None:
    with pytest.raises(SignatureInvalid):
        verifier.verify(b"\xff\xfe\x00", "t=1,v1=abc")


def test_signed_non_json_is_malformed(verifier: EventVerifier) -> None:
    body = b"not json"

    with pytest.raises(MalformedEvent):
        verifier.verify(body, sign(body))


def test_signed_event_without_data_object_is_malformed(verifier: EventVerifier) -> None:
    body = json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded", "data": {}}).encode()

    with pytest.raises(MalformedEvent):
        verifier.verify(body, sign(body))


def test_empty_secret_is_a_configuration_error() -> None:
    with pytest.raises(ValueError):
        EventVerifier("")
