"""Tests for PKCE, nonce and login-state encoding."""
import base64
import hashlib
import re

from zauth.pkce import decode_state, encode_state, generate_nonce, generate_pkce, generate_state


def test_generate_nonce_length():
    n = generate_nonce()
    assert len(n) >= 32
    assert re.match(r"^[A-Za-z0-9_-]+$", n)
    assert generate_nonce() != n


def test_generate_pkce_returns_verifier_and_challenge():
    verifier, challenge = generate_pkce()
    assert 43 <= len(verifier) <= 128
    assert re.match(r"^[A-Za-z0-9_-]+$", verifier)
    assert re.match(r"^[A-Za-z0-9_-]+$", challenge)
    assert len(challenge) == 43  # base64url(SHA256 digest) no padding


def test_pkce_challenge_is_s256_of_verifier():
    verifier, challenge = generate_pkce()
    expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode("ascii")).digest()).rstrip(b"=").decode("ascii")
    assert challenge == expected


def test_state_carries_login_state_and_randomness():
    a = generate_state({"returnTo": "/dashboard"})
    b = generate_state({"returnTo": "/dashboard"})
    assert a != b
    assert re.match(r"^[A-Za-z0-9_-]+$", a)
    decoded = decode_state(a)
    assert decoded["returnTo"] == "/dashboard"
    assert len(decoded["nonce"]) >= 32


def test_state_without_login_state():
    assert set(decode_state(generate_state())) == {"nonce"}


def test_encode_state_keeps_caller_fields():
    assert decode_state(encode_state({"returnTo": "/x", "tenant": "acme"}))["tenant"] == "acme"


def test_decode_state_rejects_foreign_values():
    assert decode_state("not base64 json!") == {}
    assert decode_state("bm90IGpzb24") == {}  # "not json"
    assert decode_state("WzEsMl0") == {}  # "[1,2]"
