"""
Client Web configuration.
zauth reads ZAUTH_* from this mapping: the real environment wins, the values below are local-dev fallbacks.
"""
import os

_DEV_DEFAULTS = {
    # Authorization Server (issuer): discovery at <issuer>/.well-known/openid-configuration
    "ZAUTH_ISSUER_BASE_URL": "http://127.0.0.1:9000",
    # This app; the callback is <base_url>/api/auth/callback
    "ZAUTH_BASE_URL": "http://127.0.0.1:8000",
    "ZAUTH_CLIENT_ID": "test-client",
    "ZAUTH_SECRET": "dev-only-secret-change-me-4f1c2a9e7b3d",
    # offline_access so the IdP issues a refresh token
    "ZAUTH_SCOPE": "openid profile email offline_access",
    # The lab AS has no /v2/logout; use its end_session_endpoint
    "ZAUTH_LOGOUT": "false",
}

ZAUTH_ENV = {**_DEV_DEFAULTS, **os.environ}

# Resource Server base URL (/me requires api.read)
RESOURCE_SERVER_URL = os.environ.get("OAUTH_RESOURCE_SERVER_URL", "http://127.0.0.1:7000").rstrip("/")
API_SCOPE = os.environ.get("OAUTH_API_SCOPE", "api.read")
