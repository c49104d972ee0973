import json

import pytest

from app.core.errors import MalformedEvent, SignatureInvalid
from app.services.signature import signature_timestamp, verify_signature
from conftest import build_signature_header, compute_signature

SECRET = "whsec_unit"
NOW = 1_700_000_000
BODY = json.dumps({"id": "evt_1", "type": "charge.refunded", "created": NOW, "data": {"object": {}}}).encode()


def test_valid_signature_returns_decoded_event():
    header = build_signature_header(BODY, SECRET, timestamp=NOW)
    verified = verify_signature(BODY, header, SECRET, now=NOW)
    assert verified.event_id == "evt_1"
    assert verified.event_type == "charge.refunded"
    assert verified.created == NOW
    assert verified.raw_body == BODY


def test_wrong_secret_is_rejected():
    header = build_signature_header(BODY, "whsec_other", timestamp=NOW)
    with pytest.raises(SignatureInvalid):
        verify_signature(BODY, header, SECRET, now=NOW)


def test_tampered_body_is_rejected():
    header = build_signature_header(BODY, SECRET, timestamp=NOW)
    tampered = BODY.replace(b"evt_1", b"evt_2")
    with pytest.raises(SignatureInvalid):
        verify_signature(tampered, header, SECRET, now=NOW)


@pytest.mark.parametrize("offset", [301, -301])
def test_timestamp_outside_tolerance_is_rejected(offset):
    header = build_signature_header(BODY, SECRET, timestamp=NOW + offset)
    with pytest.raises(SignatureInvalid, match="tolerance"):
        verify_signature(BODY, header, SECRET, now=NOW, tolerance=300)


def test_timestamp_inside_tolerance_is_accepted():
    header = build_signature_header(BODY, SECRET, timestamp=NOW - 299)
    assert verify_signature(BODY, header, SECRET, now=NOW, tolerance=300).event_id == "evt_1"


def test_any_matching_v1_signature_is_enough():
    good = compute_signature(BODY, NOW, SECRET)
    header = f"t={NOW},v1={'0' * 64},v0=ignored,v1={good}"
    assert verify_signature(BODY, header, SECRET, now=NOW).event_id == "evt_1"


@pytest.mark.parametrize("header", [None, "", "v1=abc", f"t={NOW}", "t=soon,v1=abc"])
def test_malformed_header_is_rejected(header):
    with pytest.raises(SignatureInvalid):
        verify_signature(BODY, header, SECRET, now=NOW)


def test_missing_secret_is_rejected():
    header = build_signature_header(BODY, SECRET, timestamp=NOW)
    with pytest.raises(SignatureInvalid, match="not configured"):
        verify_signature(BODY, header, None, now=NOW)


def test_signed_non_json_body_is_malformed():
    body = b"not json"
    header = build_signature_header(body, SECRET, timestamp=NOW)
    with pytest.raises(MalformedEvent):
        verify_signature(body, header, SECRET, now=NOW)


def test_signed_body_without_id_is_malformed():
    body = json.dumps({"type": "charge.refunded"}).encode()
    header = build_signature_header(body, SECRET, timestamp=NOW)
    with pytest.raises(MalformedEvent, match="no id"):
        verify_signature(body, header, SECRET, now=NOW)


def test_non_ascii_signature_is_rejected():
    header = f"t={NOW},v1=éé"
    with pytest.raises(SignatureInvalid):
        verify_signature(BODY, header, SECRET, now=NOW)


def test_signature_timestamp_ignores_other_entries():
    assert signature_timestamp("v1=aa, t=12, v1=bb") == 12
    with pytest.raises(SignatureInvalid):
        signature_timestamp("v1=aa")
