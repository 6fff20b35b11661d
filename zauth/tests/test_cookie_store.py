"""Tests for the session cookie codec: round trip, chunking, tampering, expiry, rotation, stale chunk cleanup."""
import secrets

from fastapi import Response

from zauth.claims import Claims
from zauth.cookie_store import CookieStore
from zauth.session import Session

NOW = 1_700_000_000


def _session(**user) -> Session:
    claims = {"sub": "user-1", "name": "Ada"}
    claims.update(user)
    return Session(
        user=Claims(claims),
        created_at=NOW,
        access_token="at",
        access_token_scope="openid profile",
        access_token_expires_at=NOW + 600,
        token_type="Bearer",
        refresh_token="rt",
        id_token="id",
    )


def _written(helpers, response) -> dict:
    """Cookies the response leaves in a browser (deleted ones dropped)."""
    out = {}
    for name, (value, header) in helpers.parse_set_cookies(response).items():
        if "max-age=0" not in header.lower():
            out[name] = value
    return out


def _write(store, helpers, session, expires_at=NOW + 3600, request_cookies=None):
    response = Response()
    store.write(helpers.make_request(request_cookies), response, session, expires_at, now=NOW)
    return response


def test_round_trip(config, helpers):
    store = CookieStore(config)
    session = _session()
    response = _write(store, helpers, session)
    cookies = _written(helpers, response)
    assert list(cookies) == ["appSession"]

    stored = store.read(helpers.make_request(cookies), now=NOW + 1)
    assert stored is not None
    assert stored.session == session
    assert stored.expires_at == NOW + 3600
    assert stored.issued_at == NOW


def test_cookie_attributes_follow_config(make_config, helpers):
    store = CookieStore(make_config(session={"cookie": {"domain": "example.com", "path": "/app", "same_site": "strict"}}))
    header = helpers.parse_set_cookies(_write(store, helpers, _session()))["appSession"][1].lower()
    assert "httponly" in header
    assert "secure" in header
    assert "samesite=strict" in header
    assert "domain=example.com" in header
    assert "path=/app" in header
    assert "max-age=3600" in header


def test_large_payload_chunks_and_reassembles(config, helpers):
    store = CookieStore(config)
    session = _session(blob=secrets.token_hex(6000))
    response = _write(store, helpers, session)
    cookies = _written(helpers, response)

    assert "appSession" not in cookies
    assert len(cookies) >= 3
    assert sorted(cookies) == [f"appSession.{i}" for i in range(len(cookies))]
    for _, header in helpers.parse_set_cookies(response).values():
        assert len(header) <= 4096

    stored = store.read(helpers.make_request(cookies), now=NOW + 1)
    assert stored is not None
    assert stored.session == session
    assert stored.session.user["blob"] == session.user["blob"]


def test_missing_chunk_reads_as_absent(config, helpers):
    store = CookieStore(config)
    cookies = _written(helpers, _write(store, helpers, _session(blob=secrets.token_hex(6000))))
    del cookies["appSession.1"]
    assert store.read(helpers.make_request(cookies), now=NOW + 1) is None


def test_tampered_value_reads_as_absent(config, helpers):
    store = CookieStore(config)
    value = _written(helpers, _write(store, helpers, _session()))["appSession"]
    header, nonce, ciphertext = value.split(".")
    i = len(ciphertext) // 2
    ciphertext = ciphertext[:i] + ("A" if ciphertext[i] != "A" else "B") + ciphertext[i + 1:]
    tampered = ".".join([header, nonce, ciphertext])
    assert store.read(helpers.make_request({"appSession": tampered}), now=NOW + 1) is None


def test_garbage_cookie_reads_as_absent(config, helpers):
    store = CookieStore(config)
    assert store.read(helpers.make_request({"appSession": "garbage"}), now=NOW) is None
    assert store.has_cookies(helpers.make_request({"appSession": "garbage"}))


def test_expired_header_reads_as_absent(config, helpers):
    store = CookieStore(config)
    cookies = _written(helpers, _write(store, helpers, _session(), expires_at=NOW + 10))
    assert store.read(helpers.make_request(cookies), now=NOW + 9) is not None
    assert store.read(helpers.make_request(cookies), now=NOW + 11) is None


def test_secret_rotation(make_config, helpers):
    old_store = CookieStore(make_config(secret="old-secret-0000000000000000000000"))
    rotated = CookieStore(make_config(secret=["new-secret-1111111111111111111111", "old-secret-0000000000000000000000"]))
    new_only = CookieStore(make_config(secret="new-secret-1111111111111111111111"))

    old_cookies = _written(helpers, _write(old_store, helpers, _session()))
    stored = rotated.read(helpers.make_request(old_cookies), now=NOW + 1)
    assert stored is not None
    assert stored.session.user.sub == "user-1"

    new_cookies = _written(helpers, _write(rotated, helpers, stored.session))
    assert new_only.read(helpers.make_request(new_cookies), now=NOW + 1) is not None
    assert old_store.read(helpers.make_request(new_cookies), now=NOW + 1) is None


def test_small_write_clears_stale_chunks(config, helpers):
    store = CookieStore(config)
    previous = {f"appSession.{i}": "x" for i in range(4)}
    response = _write(store, helpers, _session(), request_cookies=previous)
    set_cookies = helpers.parse_set_cookies(response)
    assert "max-age=0" not in set_cookies["appSession"][1].lower()
    for i in range(4):
        assert "max-age=0" in set_cookies[f"appSession.{i}"][1].lower()


def test_chunked_write_clears_single_cookie_and_extra_chunks(config, helpers):
    store = CookieStore(config)
    previous = {"appSession": "x", **{f"appSession.{i}": "x" for i in range(12)}}
    response = _write(store, helpers, _session(blob=secrets.token_hex(6000)), request_cookies=previous)
    set_cookies = helpers.parse_set_cookies(response)
    assert "max-age=0" in set_cookies["appSession"][1].lower()
    assert "max-age=0" in set_cookies["appSession.11"][1].lower()
    assert "max-age=0" not in set_cookies["appSession.0"][1].lower()


def test_clear_expires_single_cookie_and_every_chunk(config, helpers):
    store = CookieStore(config)
    response = Response()
    request = helpers.make_request({"appSession.0": "a", "appSession.1": "b", "other": "keep"})
    store.clear(request, response)
    set_cookies = helpers.parse_set_cookies(response)
    assert set(set_cookies) == {"appSession", "appSession.0", "appSession.1"}
    assert all("max-age=0" in header.lower() for _, header in set_cookies.values())


def test_transient_cookie_has_no_max_age(make_config, helpers):
    store = CookieStore(make_config(session={"cookie": {"transient": True}}))
    header = helpers.parse_set_cookies(_write(store, helpers, _session()))["appSession"][1].lower()
    assert "max-age" not in header
    assert "expires" not in header
