"""
The ZAuth instance: everything built once from a validated Config and handed to the host app.
Host wiring:

    zauth = init_zauth(secret=..., issuer_base_url=..., base_url=..., client_id=...)
    zauth.install(app)

    @app.get("/profile")
    def profile(session: Session = Depends(zauth.with_auth_required)): ...
"""
import logging
import time
from typing import Any, Callable
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status

from zauth.config import Config, load_config
from zauth.cookie_store import CookieStore
from zauth.crypto import Cipher, Signer
from zauth.errors import AccessTokenError, OidcTimeoutError
from zauth.flow import AccessTokenRequest, AccessTokenResult, FlowController, LoginOptions, LogoutOptions
from zauth.handlers import build_router
from zauth.oidc import OidcClient
from zauth.session import Session
from zauth.session_cache import SessionCacheMiddleware
from zauth.transient_store import TransientStore

logger = logging.getLogger(__name__)


class ZAuth:
    def __init__(self, config: Config, oidc: OidcClient | None = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.oidc = oidc or OidcClient(config)
        self.store = CookieStore(config, Cipher(config.secrets))
        self.transient = TransientStore(config, Signer(config.secrets))
        self.flow = FlowController(config, self.oidc, self.transient, self.store, clock=clock)

    def router(self, profile_refetch: bool = False) -> APIRouter:
        return build_router(self.flow, self.config.callback_url, self.config.routes.login, profile_refetch=profile_refetch)

    def install(self, app: FastAPI, profile_refetch: bool = False) -> None:
        """Add the session middleware and the auth routes to app."""
        app.add_middleware(SessionCacheMiddleware)
        app.include_router(self.router(profile_refetch=profile_refetch))

    # Host-facing operations (each takes the current request)

    def login(self, request: Request, options: LoginOptions | None = None):
        return self.flow.login(request, options)

    def logout(self, request: Request, options: LogoutOptions | None = None):
        return self.flow.logout(request, options)

    def get_session(self, request: Request) -> Session | None:
        return self.flow.session_cache(request).get()

    def get_access_token(self, request: Request, refresh: bool = False, scopes: tuple[str, ...] = ()) -> AccessTokenResult:
        return self.flow.get_access_token(request, AccessTokenRequest(refresh=refresh, scopes=tuple(scopes)))

    # Dependencies

    def with_auth_required(self, request: Request) -> Session:
        """Dependency: current session, or 401."""
        session = self.get_session(request)
        if session is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "not_authenticated", "error_description": "The user does not have a valid session"},
            )
        return session

    def with_page_auth_required(self, request: Request) -> Session:
        """Dependency for browser pages: current session, or a 302 to the login route that comes back here."""
        session = self.get_session(request)
        if session is None:
            return_to = request.url.path
            if request.url.query:
                return_to = f"{return_to}?{request.url.query}"
            raise HTTPException(
                status_code=status.HTTP_302_FOUND,
                headers={"Location": f"{self.config.routes.login}?{urlencode({'returnTo': return_to})}"},
            )
        return session

    def with_auth_optional(self, request: Request) -> Session | None:
        """Dependency: current session or None."""
        return self.get_session(request)

    def require_access_token(self, *scopes: str):
        """Dependency factory: a usable access token carrying scopes (refreshed if needed), else 401."""

        def _check(request: Request) -> AccessTokenResult:
            try:
                return self.get_access_token(request, scopes=scopes)
            except AccessTokenError as e:
                logger.info("Access token unavailable (%s): %s", e.code, e)
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail={"error": e.code, "error_description": str(e)},
                )
            except OidcTimeoutError as e:
                raise HTTPException(
                    status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                    detail={"error": "temporarily_unavailable", "error_description": str(e)},
                )

        return Depends(_check)


def init_zauth(env=None, oidc: OidcClient | None = None, clock: Callable[[], float] = time.time, **overrides: Any) -> ZAuth:
    """
    Resolve and validate configuration (defaults -> ZAUTH_* environment -> overrides) and build the instance.
    Raises ConfigurationError at startup; nothing is re-read per request.
    """
    config = load_config(env=env, **overrides)
    logger.info("zauth initialised for issuer %s (client_id=%s)", config.issuer_base_url, config.client_id)
    return ZAuth(config, oidc=oidc, clock=clock)
