"""
OpenID Connect client for the IdP: discovery, authorization URL, code exchange, refresh, ID token
verification (PyJWT + JWKS), userinfo and end-session URL.
Every call carries the configured timeout; a timeout surfaces as OidcTimeoutError and nothing is retried here
(authorization codes are single-use).
"""
import logging
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
import jwt
from jwt import PyJWKClient

from zauth.config import Config
from zauth.errors import (
    ClaimValidationFailure,
    DiscoveryError,
    OidcTimeoutError,
    TokenExchangeFailure,
    TokenRefreshFailure,
    UserInfoError,
)

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class Metadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    end_session_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    id_token_signing_alg_values_supported: tuple[str, ...] = ()

    @classmethod
    def from_document(cls, doc: dict) -> "Metadata":
        missing = [k for k in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri") if not doc.get(k)]
        if missing:
            raise DiscoveryError(f"openid-configuration is missing {', '.join(missing)}")
        algs = doc.get("id_token_signing_alg_values_supported")
        return cls(
            issuer=doc["issuer"],
            authorization_endpoint=doc["authorization_endpoint"],
            token_endpoint=doc["token_endpoint"],
            jwks_uri=doc["jwks_uri"],
            end_session_endpoint=doc.get("end_session_endpoint"),
            userinfo_endpoint=doc.get("userinfo_endpoint"),
            id_token_signing_alg_values_supported=tuple(algs) if isinstance(algs, list) else (),
        )


def _error_body(r: httpx.Response) -> dict:
    if r.headers.get("content-type", "").startswith("application/json"):
        try:
            body = r.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    return {}


def _json_object(r: httpx.Response) -> dict | None:
    """Body of a 200 response as a JSON object, or None when it is not one (HTML error page, list, garbage)."""
    try:
        body = r.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _add_query(url: str, params: dict) -> str:
    return f"{url}{'&' if '?' in url else '?'}{urlencode(params)}"


class OidcClient:
    def __init__(self, config: Config):
        self._config = config
        self._metadata: Metadata | None = None
        self._jwks_client: PyJWKClient | None = None

    @property
    def timeout(self) -> float:
        return self._config.http_timeout

    def discover(self) -> Metadata:
        """Fetch and cache the issuer's openid-configuration (once per process)."""
        if self._metadata is not None:
            return self._metadata
        url = f"{self._config.issuer_base_url}{WELL_KNOWN_PATH}"
        try:
            r = httpx.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise OidcTimeoutError(f"Discovery timed out: {url}") from e
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Discovery request failed: {e}") from e
        if r.status_code != 200:
            raise DiscoveryError(f"Discovery failed: expected 200 OK, got {r.status_code}")
        try:
            doc = r.json()
        except ValueError as e:
            raise DiscoveryError("Discovery document is not JSON") from e
        self._metadata = Metadata.from_document(doc)
        logger.info("Discovered OIDC issuer %s", self._metadata.issuer)
        return self._metadata

    def authorization_url(self, params: dict) -> str:
        """Authorization endpoint URL with client_id, redirect_uri and the given parameters."""
        metadata = self.discover()
        query = {"client_id": self._config.client_id, "redirect_uri": self._config.callback_url}
        query.update({k: v for k, v in params.items() if v is not None})
        return _add_query(metadata.authorization_endpoint, query)

    def _token_request(self, data: dict) -> httpx.Response:
        metadata = self.discover()
        auth = None
        if self._config.client_secret:
            # client_secret_basic
            auth = (self._config.client_id, self._config.client_secret)
        else:
            data = {**data, "client_id": self._config.client_id}
        try:
            return httpx.post(
                metadata.token_endpoint,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise OidcTimeoutError(f"Token request ({data.get('grant_type')}) timed out") from e

    def exchange_code(self, code: str, code_verifier: str | None = None) -> dict:
        """authorization_code grant. Raises TokenExchangeFailure with the IdP's status/error on rejection."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._config.callback_url,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        try:
            r = self._token_request(data)
        except httpx.HTTPError as e:
            raise TokenExchangeFailure(f"Token request failed: {e}") from e
        if r.status_code != 200:
            err = _error_body(r)
            raise TokenExchangeFailure(
                f"Token endpoint returned {r.status_code}",
                status=r.status_code,
                error=err.get("error"),
                error_description=err.get("error_description"),
            )
        tokens = _json_object(r)
        if tokens is None:
            raise TokenExchangeFailure("Token response is not a JSON object", status=r.status_code)
        if not tokens.get("access_token") and not tokens.get("id_token"):
            raise TokenExchangeFailure("Token response has neither access_token nor id_token", status=r.status_code)
        return tokens

    def refresh(self, refresh_token: str, scope: str | None = None) -> dict:
        """refresh_token grant. `scope` asks for a (superset) scope on the new access token."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scope:
            data["scope"] = scope
        try:
            r = self._token_request(data)
        except httpx.HTTPError as e:
            raise TokenRefreshFailure(f"Refresh request failed: {e}") from e
        if r.status_code != 200:
            err = _error_body(r)
            raise TokenRefreshFailure(
                f"Token endpoint returned {r.status_code} on refresh",
                status=r.status_code,
                error=err.get("error"),
                error_description=err.get("error_description"),
            )
        tokens = _json_object(r)
        if tokens is None:
            raise TokenRefreshFailure("Refresh response is not a JSON object", status=r.status_code)
        if not tokens.get("access_token"):
            raise TokenRefreshFailure("Refresh response has no access_token", status=r.status_code)
        return tokens

    def get_jwks_client(self) -> PyJWKClient:
        # PyJWKClient caches the JWK set and keys
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(
                uri=self.discover().jwks_uri,
                cache_jwk_set=True,
                lifespan=300,
                timeout=self.timeout,
            )
        return self._jwks_client

    def _signing_key(self, id_token: str):
        return self.get_jwks_client().get_signing_key_from_jwt(id_token).key

    def verify_id_token(self, id_token: str, nonce: str | None = None) -> dict:
        """
        Verify signature (configured algorithm only), iss, aud, exp/iat with clock tolerance, and nonce.
        Returns the claims. Raises ClaimValidationFailure.
        """
        metadata = self.discover()
        try:
            key = self._signing_key(id_token)
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[self._config.id_token_signing_alg],
                audience=self._config.client_id,
                issuer=metadata.issuer,
                leeway=self._config.clock_tolerance,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.PyJWKClientError as e:
            raise ClaimValidationFailure(f"Unable to resolve ID token signing key: {e}") from e
        except jwt.InvalidTokenError as e:
            raise ClaimValidationFailure(f"ID token verification failed: {e}") from e
        if nonce is not None:
            token_nonce = claims.get("nonce")
            if not isinstance(token_nonce, str) or not secrets.compare_digest(token_nonce, nonce):
                raise ClaimValidationFailure("ID token nonce mismatch", error="nonce_mismatch")
        return claims

    def userinfo(self, access_token: str) -> dict:
        metadata = self.discover()
        if not metadata.userinfo_endpoint:
            raise DiscoveryError("Issuer has no userinfo_endpoint")
        try:
            r = httpx.get(
                metadata.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise OidcTimeoutError("Userinfo request timed out") from e
        except httpx.HTTPError as e:
            raise UserInfoError(f"Userinfo request failed: {e}") from e
        if r.status_code != 200:
            raise UserInfoError(f"Userinfo endpoint returned {r.status_code}", status=r.status_code)
        body = _json_object(r)
        if body is None:
            raise UserInfoError("Userinfo response is not a JSON object", status=r.status_code)
        return body

    def end_session_url(self, return_to: str, id_token_hint: str | None = None) -> str | None:
        """
        IdP logout URL, or None when the IdP offers none.
        zauth_logout selects the `<issuer>/v2/logout?returnTo=..&client_id=..` shape explicitly.
        """
        if self._config.zauth_logout:
            return _add_query(
                f"{self._config.issuer_base_url}/v2/logout",
                {"returnTo": return_to, "client_id": self._config.client_id},
            )
        metadata = self.discover()
        if not metadata.end_session_endpoint:
            return None
        params = {"post_logout_redirect_uri": return_to}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return _add_query(metadata.end_session_endpoint, params)
