"""
Pytest fixtures for zauth: a validated Config, a controllable clock, an OIDC client with no network
(discovery pre-seeded, token/userinfo calls answered from attributes) and an app harness around TestClient.
"""
import os
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from zauth.config import load_config
from zauth.instance import ZAuth
from zauth.oidc import Metadata, OidcClient

# Tests pass env={} explicitly; keep a developer's shell from leaking in anywhere else
for _name in [n for n in os.environ if n.startswith("ZAUTH_")]:
    del os.environ[_name]

HOST = "app.example.com"
BASE_URL = f"https://{HOST}"
ISSUER = "https://idp.example.com"
CLIENT_ID = "client-1"
SECRET = "test-secret-0123456789abcdef0123456789"
NOW = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeOidc(OidcClient):
    """OidcClient whose IdP calls are answered locally and recorded."""

    def __init__(self, config):
        super().__init__(config)
        self._metadata = Metadata(
            issuer=f"{ISSUER}/",
            authorization_endpoint=f"{ISSUER}/authorize",
            token_endpoint=f"{ISSUER}/oauth/token",
            jwks_uri=f"{ISSUER}/.well-known/jwks.json",
            end_session_endpoint=f"{ISSUER}/oidc/logout",
            userinfo_endpoint=f"{ISSUER}/userinfo",
        )
        self.exchange_calls = []
        self.refresh_calls = []
        self.userinfo_calls = []
        self.tokens = {
            "access_token": "at-1",
            "refresh_token": "rt-1",
            "id_token": "id-token-1",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid profile email",
        }
        self.refresh_tokens = {
            "access_token": "at-2",
            "token_type": "Bearer",
            "expires_in": 3600,
            "scope": "openid profile email",
        }
        self.refresh_error = None
        # Echo a requested scope back in the refresh response, as most IdPs do
        self.echo_scope = True
        self.exchange_error = None
        self.claims = {
            "sub": "user-1",
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "aud": CLIENT_ID,
            "iss": f"{ISSUER}/",
            "iat": int(NOW),
            "exp": int(NOW) + 3600,
            "azp": CLIENT_ID,
            "at_hash": "abc",
        }
        self.userinfo_claims = {"sub": "user-1", "name": "Ada King", "picture": "https://img.example.com/a.png"}

    def exchange_code(self, code, code_verifier=None):
        self.exchange_calls.append((code, code_verifier))
        if self.exchange_error is not None:
            raise self.exchange_error
        return dict(self.tokens)

    def verify_id_token(self, id_token, nonce=None):
        return {**self.claims, "nonce": nonce}

    def refresh(self, refresh_token, scope=None):
        self.refresh_calls.append((refresh_token, scope))
        if self.refresh_error is not None:
            raise self.refresh_error
        tokens = dict(self.refresh_tokens)
        if scope and self.echo_scope:
            tokens["scope"] = scope
        return tokens

    def userinfo(self, access_token):
        self.userinfo_calls.append(access_token)
        return dict(self.userinfo_claims)


def parse_set_cookies(response) -> dict:
    """name -> (value, full header) for every Set-Cookie on response; later headers win."""
    out = {}
    headers = response.headers
    values = headers.get_list("set-cookie") if hasattr(headers, "get_list") else headers.getlist("set-cookie")
    for header in values:
        name, _, value = header.split(";", 1)[0].partition("=")
        out[name.strip()] = (value.strip('"'), header)
    return out


def make_request(cookies: dict | None = None, path: str = "/") -> Request:
    headers = []
    if cookies:
        headers.append((b"cookie", "; ".join(f"{k}={v}" for k, v in cookies.items()).encode("latin-1")))
    return Request({
        "type": "http",
        "method": "GET",
        "scheme": "https",
        "server": ("app.example.com", 443),
        "path": path,
        "query_string": b"",
        "headers": headers,
        "client": ("203.0.113.7", 50000),
    })


class Harness:
    def __init__(self, config, clock):
        self.config = config
        self.clock = clock
        self.oidc = FakeOidc(config)
        self.zauth = ZAuth(config, oidc=self.oidc, clock=clock)
        self.app = FastAPI()
        self.zauth.install(self.app)
        zauth = self.zauth

        @self.app.get("/session")
        def session_view(session=Depends(zauth.with_auth_optional)):
            return {"user": dict(session.user) if session else None}

        @self.app.get("/private")
        def private_view(session=Depends(zauth.with_auth_required)):
            return {"sub": session.user.sub}

        @self.app.get("/page")
        def page_view(session=Depends(zauth.with_page_auth_required)):
            return {"sub": session.user.sub}

        @self.app.get("/token")
        def token_view(token=zauth.require_access_token()):
            return {"access_token": token.access_token, "expires_at": token.expires_at, "scope": token.scope}

        @self.app.get("/token/shows")
        def token_shows_view(token=zauth.require_access_token("read:shows")):
            return {"access_token": token.access_token, "scope": token.scope}

        self.client = TestClient(self.app, base_url=BASE_URL)

    def start_login(self, return_to: str | None = None):
        params = {"returnTo": return_to} if return_to else None
        r = self.client.get(self.config.routes.login, params=params, follow_redirects=False)
        assert r.status_code == 302, r.text
        query = parse_qs(urlparse(r.headers["location"]).query)
        return r, {k: v[0] for k, v in query.items()}

    def complete_login(self, return_to: str | None = None):
        _, query = self.start_login(return_to)
        return self.client.get(
            self.config.routes.callback,
            params={"code": "auth-code-1", "state": query["state"]},
            follow_redirects=False,
        )

    def set_session(self, session, expires_at: int | None = None) -> None:
        """Put an encrypted session cookie (chunked if needed) in the client's jar."""
        now = self.clock()
        expires_at = expires_at if expires_at is not None else int(now) + 3600
        value = self.zauth.store.encode(session, expires_at, now)
        chunks = self.zauth.store.split(value)
        if len(chunks) == 1:
            self.client.cookies.set(self.config.session.name, value, domain=HOST)
        else:
            for i, chunk in enumerate(chunks):
                self.client.cookies.set(f"{self.config.session.name}.{i}", chunk, domain=HOST)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_config():
    def _make(**overrides):
        values = dict(
            secret=SECRET,
            issuer_base_url=ISSUER,
            base_url=BASE_URL,
            client_id=CLIENT_ID,
            client_secret="client-secret",
        )
        values.update(overrides)
        return load_config(env={}, **values)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def make_harness(make_config, clock):
    def _make(**overrides):
        return Harness(make_config(**overrides), clock)

    return _make


@pytest.fixture
def harness(make_harness):
    return make_harness()


@pytest.fixture
def helpers():
    return SimpleNamespace(
        parse_set_cookies=parse_set_cookies,
        make_request=make_request,
    )
