"""Tests for webhook signature verification and event parsing."""

import hashlib
import hmac
import json
import time

import pytest

from reconciler.core.exceptions import InvalidSignature, MalformedPayload
from reconciler.webhooks.events import EventType, parse_event
from reconciler.webhooks.signature import verify_signature

pytestmark = pytest.mark.unit

SECRET = "whsec_test_secret"


def sign(body: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


BODY = json.dumps(
    {"id": "evt_1", "type": "payout.paid", "livemode": False, "data": {"object": {"id": "po_1"}}}
).encode()


def test_valid_signature_passes():
    verify_signature(BODY, sign(BODY), [SECRET])


def test_any_configured_secret_is_accepted():
    verify_signature(BODY, sign(BODY, secret="whsec_new"), ["whsec_old", "whsec_new"])


def test_missing_header_rejected():
    with pytest.raises(InvalidSignature, match="Missing"):
        verify_signature(BODY, None, [SECRET])


def test_no_secrets_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, sign(BODY), ["", ""])


def test_wrong_secret_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, sign(BODY, secret="whsec_other"), [SECRET])


def test_single_byte_change_rejected():
    header = sign(BODY)
    tampered = BODY.replace(b"po_1", b"po_2")

    with pytest.raises(InvalidSignature):
        verify_signature(tampered, header, [SECRET])


def test_reserialized_body_rejected():
    """Verification runs over the exact bytes received, not a re-encoding."""
    header = sign(BODY)
    reserialized = json.dumps(json.loads(BODY), indent=2).encode()

    with pytest.raises(InvalidSignature):
        verify_signature(reserialized, header, [SECRET])


def test_stale_timestamp_rejected():
    old = int(time.time()) - 3600

    with pytest.raises(InvalidSignature):
        verify_signature(BODY, sign(BODY, timestamp=old), [SECRET], tolerance=300)


def test_garbage_header_rejected():
    with pytest.raises(InvalidSignature):
        verify_signature(BODY, "not-a-signature", [SECRET])


def test_parse_event_reads_envelope():
    event = parse_event(BODY)

    assert event.id == "evt_1"
    assert event.event_type is EventType.PAYOUT_PAID
    assert event.object == {"id": "po_1"}


def test_parse_event_unknown_type_is_not_an_error():
    event = parse_event(
        json.dumps({"id": "evt_2", "type": "radar.early_fraud_warning.created", "data": {"object": {}}}).encode()
    )

    assert event.event_type is None


def test_parse_thin_event_uses_related_object():
    event = parse_event(
        json.dumps(
            {
                "id": "evt_v2",
                "type": "v2.core.account.updated",
                "related_object": {"id": "acct_1", "type": "v2.core.account", "url": "/v2/core/accounts/acct_1"},
            }
        ).encode()
    )

    assert event.event_type is EventType.ACCOUNT_UPDATED_V2
    assert event.related_object.id == "acct_1"
    assert event.object == {}


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b"{}",
        json.dumps({"id": "evt_3", "type": "payout.paid"}).encode(),
    ],
)
def test_parse_event_rejects_malformed_payloads(body):
    with pytest.raises(MalformedPayload):
        parse_event(body)
