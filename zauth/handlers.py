"""
FastAPI routes for the auth endpoints: login, callback (GET and form_post), logout, profile.
Callback failures render a small HTML error page; CSRF, transient-state and claim failures only ever show
a generic message, provider errors show what the IdP reported.
"""
import html
import logging
from urllib.parse import urlparse

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse

from zauth.errors import (
    AccessTokenError,
    CallbackError,
    CsrfStateMismatch,
    DiscoveryError,
    IdentityProviderError,
    OidcTimeoutError,
    TokenExchangeFailure,
    TokenRefreshFailure,
    TransientStateMissing,
    UserInfoError,
)
from zauth.flow import FlowController, LoginOptions, LogoutOptions
from zauth.transient_store import TRANSIENT_KEYS

logger = logging.getLogger(__name__)

LOGOUT_PATH = "/api/auth/logout"
PROFILE_PATH = "/api/auth/me"


def error_page(title: str, message: str, status_code: int) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
  <p>{html.escape(message)}</p>
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


def callback_error_page(e: CallbackError) -> HTMLResponse:
    if isinstance(e, IdentityProviderError):
        return error_page("Login error", e.public_message, e.status_code)
    if isinstance(e, TokenExchangeFailure):
        return error_page("Token exchange failed", e.public_message, e.status_code)
    return error_page("Error", CallbackError.public_message, e.status_code)


def _path(url: str) -> str:
    return urlparse(url).path or "/"


def build_router(flow: FlowController, callback_url: str, login_path: str, profile_refetch: bool = False) -> APIRouter:
    """
    Auth routes mounted at the configured paths. Sync routes run in FastAPI's threadpool, so the blocking
    IdP calls never hold the event loop.
    """
    router = APIRouter(tags=["auth"])

    def _provider_unavailable(e: Exception) -> HTMLResponse:
        logger.warning("Identity provider unavailable: %s", e)
        return error_page("Login unavailable", "The identity provider could not be reached. Please try again.", 502)

    @router.get(login_path)
    def login(request: Request, returnTo: str | None = None):
        """Redirect to the IdP's authorization endpoint."""
        try:
            return flow.login(request, LoginOptions(return_to=returnTo))
        except (DiscoveryError, OidcTimeoutError) as e:
            return _provider_unavailable(e)

    def _complete(request: Request, params: dict) -> Response:
        try:
            return flow.callback(request, params)
        except CallbackError as e:
            logger.warning("Callback failed (%s): %s", e.error, e)
            response = callback_error_page(e)
            if isinstance(e, (CsrfStateMismatch, TransientStateMissing)):
                # Not this browser's login: its in-flight transient cookies stay
                return response
        except (DiscoveryError, OidcTimeoutError) as e:
            response = _provider_unavailable(e)
        # Failed attempts use up the transient state as well
        for key in TRANSIENT_KEYS:
            flow.transient.consume(response, key)
        return response

    @router.get(_path(callback_url), response_class=HTMLResponse)
    def callback(request: Request):
        """IdP redirect back (response_mode=query)."""
        return _complete(request, dict(request.query_params))

    @router.post(_path(callback_url), response_class=HTMLResponse)
    async def callback_form_post(request: Request):
        """IdP auto-submitted form (response_mode=form_post)."""
        form = await request.form()
        params = {k: v for k, v in form.items() if isinstance(v, str)}
        return await run_in_threadpool(_complete, request, params)

    @router.get(LOGOUT_PATH)
    def logout(request: Request, returnTo: str | None = None):
        """Clear the session and redirect (through the IdP's logout when enabled)."""
        try:
            return flow.logout(request, LogoutOptions(return_to=returnTo))
        except (DiscoveryError, OidcTimeoutError) as e:
            logger.warning("IdP logout unavailable, logging out locally: %s", e)
            response = error_page("Logged out", "You have been logged out of this application.", 200)
            flow.session_cache(request).commit(response)
            return response

    @router.get(PROFILE_PATH)
    def profile(request: Request):
        """Claims of the logged-in user; 401 when there is no session."""
        try:
            user = flow.profile(request, refetch=profile_refetch)
        except TokenRefreshFailure as e:
            # No HTTP status: the token endpoint was never reached
            if e.status is None or e.status >= 500:
                raise HTTPException(
                    status_code=status.HTTP_502_BAD_GATEWAY,
                    detail={"error": "userinfo_failed", "error_description": str(e)},
                )
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": e.code, "error_description": str(e)},
            )
        except AccessTokenError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": e.code, "error_description": str(e)},
            )
        except (UserInfoError, DiscoveryError, OidcTimeoutError) as e:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={"error": "userinfo_failed", "error_description": str(e)},
            )
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"error": "not_authenticated", "error_description": "The user does not have a valid session"},
            )
        return JSONResponse(dict(user), headers={"Cache-Control": "no-store"})

    return router
