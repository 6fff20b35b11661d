"""Tests for transient login-state cookies (state, nonce, code_verifier)."""
from fastapi import Response

from zauth.transient_store import CODE_VERIFIER, NONCE, STATE, TransientStore

NOW = 1_700_000_000


def _saved(store, helpers, values, now=NOW, max_age=None):
    response = Response()
    for key, value in values.items():
        store.save(response, key, value, max_age=max_age, now=now)
    return response


def _cookies(helpers, response) -> dict:
    return {name: value for name, (value, _) in helpers.parse_set_cookies(response).items()}


def test_save_then_read(config, helpers):
    store = TransientStore(config)
    response = _saved(store, helpers, {STATE: "s-123", NONCE: "n-456", CODE_VERIFIER: "v-789"})
    cookies = _cookies(helpers, response)
    assert set(cookies) == {"zauth_state", "zauth_nonce", "zauth_code_verifier"}

    values = store.read(helpers.make_request(cookies), now=NOW + 1)
    assert values == {STATE: "s-123", NONCE: "n-456", CODE_VERIFIER: "v-789"}


def test_query_mode_uses_lax(config, helpers):
    store = TransientStore(config)
    header = helpers.parse_set_cookies(_saved(store, helpers, {STATE: "s"}))["zauth_state"][1].lower()
    assert "samesite=lax" in header
    assert "httponly" in header
    assert "max-age=600" in header


def test_form_post_uses_none_and_secure(make_config, helpers):
    store = TransientStore(make_config(authorization_params={"response_mode": "form_post"}))
    header = helpers.parse_set_cookies(_saved(store, helpers, {STATE: "s"}))["zauth_state"][1].lower()
    assert "samesite=none" in header
    assert "secure" in header


def test_legacy_fallback_written_without_same_site(make_config, helpers):
    store = TransientStore(
        make_config(authorization_params={"response_mode": "form_post"}, legacy_same_site_cookie=True)
    )
    set_cookies = helpers.parse_set_cookies(_saved(store, helpers, {STATE: "s"}))
    assert set(set_cookies) == {"zauth_state", "_zauth_state"}
    assert "samesite" not in set_cookies["_zauth_state"][1].lower()


def test_legacy_fallback_not_written_for_query_mode(make_config, helpers):
    store = TransientStore(make_config(legacy_same_site_cookie=True))
    assert set(helpers.parse_set_cookies(_saved(store, helpers, {STATE: "s"}))) == {"zauth_state"}


def test_legacy_value_used_only_when_modern_absent(make_config, helpers):
    store = TransientStore(
        make_config(authorization_params={"response_mode": "form_post"}, legacy_same_site_cookie=True)
    )
    modern = _cookies(helpers, _saved(store, helpers, {STATE: "modern"}))["zauth_state"]
    legacy = _cookies(helpers, _saved(store, helpers, {STATE: "legacy"}))["_zauth_state"]

    both = helpers.make_request({"zauth_state": modern, "_zauth_state": legacy})
    assert store.get(both, STATE, now=NOW) == "modern"
    only_legacy = helpers.make_request({"_zauth_state": legacy})
    assert store.get(only_legacy, STATE, now=NOW) == "legacy"


def test_expired_value_is_ignored(config, helpers):
    store = TransientStore(config)
    cookies = _cookies(helpers, _saved(store, helpers, {STATE: "s"}, max_age=60))
    assert store.get(helpers.make_request(cookies), STATE, now=NOW + 59) == "s"
    assert store.get(helpers.make_request(cookies), STATE, now=NOW + 61) is None


def test_forged_value_is_ignored(config, make_config, helpers):
    other = TransientStore(make_config(secret="a-different-secret-99999999999999"))
    forged = _cookies(helpers, _saved(other, helpers, {STATE: "attacker"}))
    assert TransientStore(config).read(helpers.make_request(forged), now=NOW) == {}
    assert TransientStore(config).read(helpers.make_request({"zauth_state": "attacker.9999999999"}), now=NOW) == {}


def test_consume_deletes_cookies(make_config, helpers):
    store = TransientStore(
        make_config(authorization_params={"response_mode": "form_post"}, legacy_same_site_cookie=True)
    )
    response = Response()
    store.consume(response, STATE)
    set_cookies = helpers.parse_set_cookies(response)
    assert set(set_cookies) == {"zauth_state", "_zauth_state"}
    assert all("max-age=0" in header.lower() for _, header in set_cookies.values())


def test_read_and_consume(config, helpers):
    store = TransientStore(config)
    cookies = _cookies(helpers, _saved(store, helpers, {STATE: "s", NONCE: "n"}))
    response = Response()
    values = store.read_and_consume(helpers.make_request(cookies), response, (STATE, NONCE), now=NOW + 1)
    assert values == {STATE: "s", NONCE: "n"}
    assert set(helpers.parse_set_cookies(response)) == {"zauth_state", "zauth_nonce"}
