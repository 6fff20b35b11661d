"""
Exceptions raised by the session layer.
Callback and crypto failures carry an operator-facing message (logged) and a generic public message
(rendered to the browser); provider errors keep the IdP's status and error code for the host app.
"""


class ZAuthError(Exception):
    """Base class for all zauth errors."""


class ConfigurationError(ZAuthError):
    """Missing or inconsistent configuration. Raised at init; never at request time."""


class DecryptionFailure(ZAuthError):
    """No configured secret authenticates the blob (tampered, truncated or rotated out)."""


class OidcTimeoutError(ZAuthError):
    """An IdP call exceeded the configured HTTP timeout. Safe for the caller to retry (except code exchange)."""


class CallbackError(ZAuthError):
    """Login callback aborted; no session is established."""

    status_code = 400
    error = "callback_error"
    public_message = "Authentication failed. Please try logging in again."

    def __init__(self, message: str, *, error: str | None = None, error_description: str | None = None):
        super().__init__(message)
        if error:
            self.error = error
        self.error_description = error_description or message


class CsrfStateMismatch(CallbackError):
    error = "state_mismatch"


class TransientStateMissing(CallbackError):
    error = "missing_state"


class ClaimValidationFailure(CallbackError):
    error = "invalid_claims"


class IdentityProviderError(CallbackError):
    """The IdP redirected back with error=...; its code and description are shown to the user."""

    def __init__(self, error: str, error_description: str | None = None):
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message, error=error, error_description=error_description)
        self.public_message = error_description or error


class TokenExchangeFailure(CallbackError):
    """Token endpoint rejected the authorization code. Not retried: codes are single-use."""

    status_code = 502

    def __init__(self, message: str, *, status: int | None = None, error: str | None = None, error_description: str | None = None):
        super().__init__(message, error=error or "token_exchange_failed", error_description=error_description)
        self.status = status
        self.public_message = f"Token exchange failed: {error_description or error or message}"


class AccessTokenError(ZAuthError):
    """get_access_token could not return a usable token. `code` is machine-readable."""

    code = "access_token_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        if code:
            self.code = code


class TokenExpired(AccessTokenError):
    code = "expired_token"


class TokenRefreshFailure(AccessTokenError):
    code = "refresh_failed"

    def __init__(self, message: str, *, status: int | None = None, error: str | None = None, error_description: str | None = None):
        super().__init__(message)
        self.status = status
        self.error = error
        self.error_description = error_description


class DiscoveryError(ZAuthError):
    """The issuer's openid-configuration could not be fetched or is incomplete."""


class UserInfoError(ZAuthError):
    """The userinfo endpoint rejected the access token or could not be reached."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status
