"""HMAC-SHA256 signing and verification."""
import hashlib
import hmac

from alertrelay.services.signing import canonical_body, generate_signature, verify_signature

SECRET = "whsec-0123456789abcdef"


def test_signature_matches_independent_hmac():
    body = canonical_body({"event_type": "backup_failed", "event_id": "e1", "data": {"b": 2, "a": 1}})
    expected = "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    assert generate_signature(body, SECRET) == expected


def test_round_trip_verifies():
    body = canonical_body({"event_id": "e1", "data": {"message": "ünïcode"}})
    assert verify_signature(body, generate_signature(body, SECRET), SECRET)


def test_mutated_body_fails():
    body = canonical_body({"event_id": "e1", "data": {"count": 1}})
    signature = generate_signature(body, SECRET)
    tampered = body.replace(b'"count":1', b'"count":2')
    assert not verify_signature(tampered, signature, SECRET)


def test_wrong_secret_fails():
    body = canonical_body({"event_id": "e1"})
    assert not verify_signature(body, generate_signature(body, SECRET), "another-secret-value")


def test_malformed_header_fails():
    body = canonical_body({"event_id": "e1"})
    digest = generate_signature(body, SECRET).removeprefix("sha256=")
    assert not verify_signature(body, digest, SECRET)
    assert not verify_signature(body, None, SECRET)


def test_canonical_body_is_stable():
    assert canonical_body({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'
