"""
Login flow state machine: login -> (IdP) -> callback -> session established -> logout, plus access-token
retrieval with silent refresh and the profile (userinfo refetch) operation.
All collaborators are built once by init_zauth and injected here; nothing reads configuration per request.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from typing import Callable
from urllib.parse import urlparse

from fastapi import Request, Response
from fastapi.responses import RedirectResponse

from zauth import pkce
from zauth.audit import (
    EVENT_CALLBACK_FAIL,
    EVENT_CALLBACK_OK,
    EVENT_CLAIM_VALIDATION_FAIL,
    EVENT_LOGIN_STARTED,
    EVENT_LOGOUT,
    EVENT_STATE_MISMATCH,
    EVENT_STATE_MISSING,
    EVENT_TOKEN_REFRESH_FAIL,
    EVENT_TOKEN_REFRESHED,
    OUTCOME_FAIL,
    log_audit,
)
from zauth.claims import Claims, filter_claims
from zauth.config import Config
from zauth.cookie_store import CookieStore
from zauth.errors import (
    AccessTokenError,
    CallbackError,
    ClaimValidationFailure,
    CsrfStateMismatch,
    IdentityProviderError,
    TokenExpired,
    TokenRefreshFailure,
    TransientStateMissing,
)
from zauth.oidc import OidcClient
from zauth.session import Session, new_session
from zauth.session_cache import SessionCache
from zauth.transient_store import CODE_VERIFIER, NONCE, STATE, TransientStore

logger = logging.getLogger(__name__)


@dataclass
class LoginOptions:
    return_to: str | None = None
    # Merged over the configured authorization parameters for this login only
    authorization_params: dict = field(default_factory=dict)
    get_login_state: Callable | None = None


@dataclass
class LogoutOptions:
    return_to: str | None = None


@dataclass
class AccessTokenRequest:
    refresh: bool = False
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class AccessTokenResult:
    access_token: str
    token_type: str | None
    expires_at: int | None
    scope: str | None


class FlowController:
    def __init__(
        self,
        config: Config,
        oidc: OidcClient,
        transient: TransientStore,
        store: CookieStore,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._oidc = oidc
        self._transient = transient
        self._store = store
        self._clock = clock

    @property
    def transient(self) -> TransientStore:
        return self._transient

    def session_cache(self, request: Request) -> SessionCache:
        return SessionCache.for_request(request, self._config, self._store, clock=self._clock)

    def safe_return_to(self, value: str | None) -> str | None:
        """
        Relative paths and absolute URLs on base_url's origin pass; anything else (other hosts,
        scheme-relative `//host`) is dropped so the callback cannot be used as an open redirect.
        """
        if not value:
            return None
        if value.startswith("/") and not value.startswith("//") and "\\" not in value:
            return value
        target = urlparse(value)
        base = urlparse(self._config.base_url)
        if target.scheme in ("http", "https") and (target.scheme, target.netloc) == (base.scheme, base.netloc):
            return value
        logger.warning("Ignoring returnTo outside the application: %s", value)
        return None

    # -- login ---------------------------------------------------------------------------------------------

    def login(self, request: Request, options: LoginOptions | None = None) -> Response:
        """Stash state/nonce/code_verifier in transient cookies and redirect to the authorization endpoint."""
        options = options or LoginOptions()
        get_login_state = options.get_login_state or self._config.get_login_state
        login_state = dict(get_login_state(request, options) or {})
        login_state["returnTo"] = self.safe_return_to(login_state.get("returnTo")) or self._config.base_url

        params = self._config.authorization_params.as_dict()
        params.update(options.authorization_params)
        if params.get("response_type") != "code":
            raise ValueError("only response_type 'code' is supported")
        if "openid" not in (params.get("scope") or "").split():
            raise ValueError("scope must contain 'openid'")
        if self._config.organization:
            params["organization"] = self._config.organization

        state = pkce.generate_state(login_state)
        nonce = pkce.generate_nonce()
        params["state"] = state
        params["nonce"] = nonce
        code_verifier = None
        if self._config.use_pkce:
            code_verifier, code_challenge = pkce.generate_pkce()
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"

        url = self._oidc.authorization_url(params)
        response = RedirectResponse(url=url, status_code=302)
        now = self._clock()
        self._transient.save(response, STATE, state, now=now)
        self._transient.save(response, NONCE, nonce, now=now)
        if code_verifier:
            self._transient.save(response, CODE_VERIFIER, code_verifier, now=now)
        log_audit(EVENT_LOGIN_STARTED, request=request)
        return response

    # -- callback ------------------------------------------------------------------------------------------

    def callback(self, request: Request, params: dict) -> Response:
        """
        Complete the login from the IdP's callback parameters (query string or form_post body).
        Raises a CallbackError subclass on any failure; no session is established in that case.
        The transient cookies are consumed on the returned response. On failure the caller clears them, except
        when the state did not verify (the cookies then belong to another login in progress).
        """
        try:
            return self._callback(request, params)
        except CsrfStateMismatch as e:
            log_audit(EVENT_STATE_MISMATCH, outcome=OUTCOME_FAIL, request=request, reason=str(e))
            raise
        except TransientStateMissing as e:
            log_audit(EVENT_STATE_MISSING, outcome=OUTCOME_FAIL, request=request, reason=str(e))
            raise
        except ClaimValidationFailure as e:
            log_audit(EVENT_CLAIM_VALIDATION_FAIL, outcome=OUTCOME_FAIL, request=request, reason=str(e))
            raise
        except CallbackError as e:
            log_audit(EVENT_CALLBACK_FAIL, outcome=OUTCOME_FAIL, request=request, reason=e.error)
            raise

    def _callback(self, request: Request, params: dict) -> Response:
        now = self._clock()
        stored = self._transient.read(request, now=now)
        expected_state = stored.get(STATE)
        if not expected_state:
            raise TransientStateMissing("No state cookie (expired, already used, or login not started here)")
        returned_state = params.get("state")
        if not returned_state or not secrets.compare_digest(returned_state, expected_state):
            raise CsrfStateMismatch("state parameter does not match the stored state")
        # Only an error answering this login's own request is shown to the user
        if params.get("error"):
            raise IdentityProviderError(params["error"], params.get("error_description"))
        nonce = stored.get(NONCE)
        if not nonce:
            raise TransientStateMissing("No nonce cookie for this login")
        code_verifier = stored.get(CODE_VERIFIER)
        if self._config.use_pkce and not code_verifier:
            raise TransientStateMissing("No code_verifier cookie for this login")
        code = params.get("code")
        if not code:
            raise CallbackError("Callback has no authorization code", error="invalid_request")

        tokens = self._oidc.exchange_code(code, code_verifier)
        id_token = tokens.get("id_token")
        if not id_token:
            raise ClaimValidationFailure("Token response has no id_token")
        claims = self._oidc.verify_id_token(id_token, nonce)

        if self._config.organization:
            org_id = claims.get("org_id")
            if not org_id:
                raise ClaimValidationFailure("ID token has no org_id claim", error="invalid_organization")
            if org_id != self._config.organization:
                raise ClaimValidationFailure(
                    f"org_id {org_id!r} does not match expected {self._config.organization!r}",
                    error="invalid_organization",
                )

        user = filter_claims(claims, self._config.identity_claim_filter)
        session = new_session(user, tokens, now=now)
        login_state = pkce.decode_state(expected_state)
        if self._config.after_callback:
            session = self._config.after_callback(request, session, login_state) or session

        cache = self.session_cache(request)
        cache.establish(session)
        return_to = self.safe_return_to(login_state.get("returnTo")) or self._config.base_url
        response = RedirectResponse(url=return_to, status_code=302)
        for key in (STATE, NONCE, CODE_VERIFIER):
            self._transient.consume(response, key)
        cache.commit(response)
        log_audit(EVENT_CALLBACK_OK, request=request, subject=session.user.sub)
        return response

    # -- logout --------------------------------------------------------------------------------------------

    def logout(self, request: Request, options: LogoutOptions | None = None) -> Response:
        """
        Clear the session cookies. With idp_logout, a logged-in user is sent through the IdP's logout
        endpoint; otherwise (or when there is no session) straight to the post-logout URL.
        """
        options = options or LogoutOptions()
        return_to = self._config.absolute_url(
            self.safe_return_to(options.return_to) or self._config.routes.post_logout_redirect
        )
        cache = self.session_cache(request)
        session = cache.get()
        cache.destroy()

        url = return_to
        if session is not None and self._config.idp_logout:
            url = self._oidc.end_session_url(return_to, id_token_hint=session.id_token) or return_to
        response = RedirectResponse(url=url, status_code=302)
        cache.commit(response)
        log_audit(EVENT_LOGOUT, request=request, subject=session.user.sub if session else None)
        return response

    # -- access token --------------------------------------------------------------------------------------

    def get_access_token(self, request: Request, options: AccessTokenRequest | None = None) -> AccessTokenResult:
        """
        Current access token, refreshed first when it has expired (within clock_tolerance), when
        refresh=True, or when scopes are requested that it was not issued for.
        Raises AccessTokenError (code no_session, missing_access_token, insufficient_scope,
        missing_refresh_token), TokenExpired, TokenRefreshFailure or OidcTimeoutError.
        """
        options = options or AccessTokenRequest()
        now = self._clock()
        cache = self.session_cache(request)
        session = cache.get()
        if session is None:
            raise AccessTokenError("The user does not have a valid session", code="no_session")
        if not session.access_token and not session.refresh_token:
            raise AccessTokenError("The session has no access token", code="missing_access_token")

        requested = set(options.scopes)
        missing_scopes = requested - session.granted_scopes()
        expired = bool(session.access_token) and session.access_token_expired_or_soon(
            buffer_seconds=self._config.clock_tolerance, now=now
        )

        if options.refresh or expired or missing_scopes or not session.access_token:
            if not session.refresh_token:
                if expired:
                    raise TokenExpired("The access token expired and there is no refresh token")
                if missing_scopes:
                    raise AccessTokenError(
                        f"The access token is missing scopes {' '.join(sorted(missing_scopes))} and cannot be refreshed",
                        code="insufficient_scope",
                    )
                if not session.access_token:
                    raise AccessTokenError("The session has no access token", code="missing_access_token")
                raise AccessTokenError("A refresh was requested but there is no refresh token", code="missing_refresh_token")
            session = self._refresh(request, cache, session, requested if missing_scopes else None, now)

        if not session.access_token:
            raise AccessTokenError("The session has no access token", code="missing_access_token")
        return AccessTokenResult(
            access_token=session.access_token,
            token_type=session.token_type,
            expires_at=session.access_token_expires_at,
            scope=session.access_token_scope,
        )

    def _refresh(self, request: Request, cache: SessionCache, session: Session, scopes: set[str] | None, now: float) -> Session:
        scope = None
        if scopes:
            # Superset: what the login asked for, what is already granted, and what is now requested
            wanted = set(self._config.authorization_params.scope.split()) | session.granted_scopes() | scopes
            scope = " ".join(sorted(wanted))
        try:
            tokens = self._oidc.refresh(session.refresh_token, scope=scope)
        except TokenRefreshFailure as e:
            log_audit(EVENT_TOKEN_REFRESH_FAIL, outcome=OUTCOME_FAIL, request=request, subject=session.user.sub, reason=e.error)
            raise
        session = session.with_tokens(tokens, now=now, requested_scope=scope)
        if self._config.after_refresh:
            session = self._config.after_refresh(request, session) or session
        cache.update(session)
        log_audit(EVENT_TOKEN_REFRESHED, request=request, subject=session.user.sub)
        return cache.get()

    # -- profile -------------------------------------------------------------------------------------------

    def profile(self, request: Request, refetch: bool = False) -> Claims | None:
        """
        User claims of the current session, or None when logged out. With refetch, claims are refreshed
        from the userinfo endpoint (filtered the same way) and the session is rewritten.
        """
        cache = self.session_cache(request)
        session = cache.get()
        if session is None:
            return None
        if not refetch:
            return session.user
        token = self.get_access_token(request).access_token
        info = self._oidc.userinfo(token)
        session = cache.get()
        user = filter_claims({**session.user, **info}, self._config.identity_claim_filter)
        session = replace(session, user=user)
        if self._config.after_refetch:
            session = self._config.after_refetch(request, session) or session
        cache.update(session)
        return cache.get().user
