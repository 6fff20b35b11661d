"""
Client Web App: demo host for zauth.
Login/callback/logout/me are mounted by zauth; this app only reads the session and the access token.
GET /, /protected, /call-me. Port 8000.
"""
import html
import json
import logging

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.responses import HTMLResponse

from client_web.config import API_SCOPE, RESOURCE_SERVER_URL, ZAUTH_ENV
from zauth.errors import AccessTokenError, OidcTimeoutError
from zauth.instance import init_zauth
from zauth.session import Session

logger = logging.getLogger(__name__)

zauth = init_zauth(env=ZAUTH_ENV)

app = FastAPI(title="Client Web", version="1.0.0")
zauth.install(app)


def _page(title: str, body: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body>
  <h1>{html.escape(title)}</h1>
{body}
  <p><a href="/">Home</a></p>
</body>
</html>""",
        status_code=status_code,
    )


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "client_web"}


@app.get("/", response_class=HTMLResponse)
def home(session: Session | None = Depends(zauth.with_auth_optional)):
    """Home page: login link, or who is logged in."""
    login = zauth.config.routes.login
    if session is None:
        body = f"""  <p><a href="{login}?returnTo=/protected">Log in</a></p>
  <p><a href="/call-me">Call /me</a> (resource server; requires login)</p>"""
    else:
        name = session.user.get("name") or session.user.sub or "user"
        body = f"""  <p>Logged in as <strong>{html.escape(str(name))}</strong></p>
  <p><a href="/protected">Profile</a> | <a href="/call-me">Call /me</a> | <a href="/api/auth/logout">Log out</a></p>"""
    return _page("OAuth2 + OIDC Client", body)


@app.get("/protected", response_class=HTMLResponse)
def protected(session: Session = Depends(zauth.with_page_auth_required)):
    """Session claims (the ID token claims kept after filtering)."""
    claims = html.escape(json.dumps(dict(session.user), indent=2, sort_keys=True))
    return _page("Profile", f"  <pre>{claims}</pre>")


def _call_resource(access_token: str) -> httpx.Response:
    return httpx.get(
        f"{RESOURCE_SERVER_URL}/me",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=10.0,
    )


@app.get("/call-me", response_class=HTMLResponse)
def call_me(request: Request):
    """
    Call resource server GET /me with the session's access token (refreshed by zauth when expired or when
    it lacks the API scope). On 401, force a refresh and retry once.
    """
    try:
        token = zauth.get_access_token(request, scopes=(API_SCOPE,))
    except AccessTokenError as e:
        logger.info("No usable access token for /call-me (%s)", e.code)
        login = zauth.config.routes.login
        return _page("Call /me", f'  <p>{html.escape(str(e))}. <a href="{login}?returnTo=/call-me">Log in</a> again.</p>')
    except OidcTimeoutError:
        return _page("Call /me", "  <p>The identity provider timed out. Try again.</p>", status_code=502)

    try:
        r = _call_resource(token.access_token)
        if r.status_code == 401:
            token = zauth.get_access_token(request, refresh=True, scopes=(API_SCOPE,))
            r = _call_resource(token.access_token)
    except AccessTokenError as e:
        return _page("Call /me", f"  <p>401 Unauthorized; refresh failed ({html.escape(e.code)}).</p>")
    except httpx.HTTPError as e:
        return _page("Call /me", f"  <p>Request failed: {html.escape(str(e))}</p>", status_code=502)

    if r.headers.get("content-type", "").startswith("application/json"):
        body_str = html.escape(json.dumps(r.json(), indent=2))
    else:
        body_str = html.escape(r.text[:500] if r.text else "(no body)")
    return _page(
        "Call /me",
        f"""  <p>Status: {r.status_code}</p>
  <pre>{body_str}</pre>
  <p><a href="/call-me">Call /me again</a></p>""",
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "client_web.main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,
    )
