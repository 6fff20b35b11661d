"""
Transient cookies for values that must survive the redirect to the IdP and back (state, nonce,
code_verifier). Each value is its own short-lived signed cookie: `value.expires_at.signature`.
Values are single-use: the callback consumes them, so a replayed callback finds nothing and fails closed.
"""
import logging
import time

from fastapi import Request, Response

from zauth import cookies
from zauth.config import Config
from zauth.crypto import Signer

logger = logging.getLogger(__name__)

STATE = "state"
NONCE = "nonce"
CODE_VERIFIER = "code_verifier"
TRANSIENT_KEYS = (STATE, NONCE, CODE_VERIFIER)

_COOKIE_PREFIX = "zauth_"
_LEGACY_PREFIX = "_"


class TransientStore:
    def __init__(self, config: Config, signer: Signer | None = None):
        self._config = config
        self._signer = signer or Signer(config.secrets)
        ck = config.session.cookie
        # form_post callbacks are cross-site POSTs: Lax cookies would not be sent
        same_site = "none" if config.uses_form_post else "lax"
        self._options = cookies.CookieOptions(
            path=ck.path,
            domain=ck.domain,
            http_only=True,
            secure=ck.secure or same_site == "none",
            same_site=same_site,
        )
        self._legacy = config.legacy_same_site_cookie and same_site == "none"

    @staticmethod
    def cookie_name(key: str) -> str:
        return f"{_COOKIE_PREFIX}{key}"

    @staticmethod
    def legacy_cookie_name(key: str) -> str:
        return f"{_LEGACY_PREFIX}{_COOKIE_PREFIX}{key}"

    def save(self, response: Response, key: str, value: str, max_age: int | None = None, now: float | None = None) -> str:
        """Set the transient cookie (and its no-SameSite fallback when enabled). Returns value."""
        max_age = self._config.transient_max_age if max_age is None else max_age
        now = time.time() if now is None else now
        signed = self._signer.sign(f"{value}.{int(now) + max_age}")
        cookies.set_cookie(response, self.cookie_name(key), signed, self._options, max_age=max_age)
        if self._legacy:
            cookies.set_cookie(response, self.legacy_cookie_name(key), signed, self._options.without_same_site(), max_age=max_age)
        return value

    def _verify(self, raw: str | None, key: str, now: float) -> str | None:
        if not raw:
            return None
        unsigned = self._signer.verify(raw)
        if unsigned is None:
            logger.warning("Transient cookie %s has an invalid signature", key)
            return None
        value, _, expires_at = unsigned.rpartition(".")
        if not expires_at.isdigit() or int(expires_at) <= now:
            logger.info("Transient cookie %s expired", key)
            return None
        return value

    def get(self, request: Request, key: str, now: float | None = None) -> str | None:
        """Verified value for key. The legacy fallback is used only when the modern cookie is absent."""
        now = time.time() if now is None else now
        modern = request.cookies.get(self.cookie_name(key))
        if modern is not None:
            return self._verify(modern, key, now)
        if self._config.legacy_same_site_cookie:
            return self._verify(request.cookies.get(self.legacy_cookie_name(key)), key, now)
        return None

    def read(self, request: Request, keys: tuple[str, ...] = TRANSIENT_KEYS, now: float | None = None) -> dict[str, str]:
        """Map of key -> verified, unexpired value for the keys present."""
        values = {}
        for key in keys:
            value = self.get(request, key, now=now)
            if value is not None:
                values[key] = value
        return values

    def consume(self, response: Response, key: str) -> None:
        """Delete the transient cookie and its legacy fallback."""
        cookies.clear(response, self.cookie_name(key), self._options)
        if self._config.legacy_same_site_cookie:
            cookies.clear(response, self.legacy_cookie_name(key), self._options.without_same_site())

    def read_and_consume(
        self, request: Request, response: Response, keys: tuple[str, ...] = TRANSIENT_KEYS, now: float | None = None
    ) -> dict[str, str]:
        values = self.read(request, keys, now=now)
        for key in keys:
            self.consume(response, key)
        return values
