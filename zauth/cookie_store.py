"""
Session cookie codec: Session -> JSON -> Cipher -> one cookie, or `name.0..name.N` chunks when the
encrypted value does not fit the per-cookie budget.
Reading prefers the unchunked cookie, reassembles chunks in index order and treats anything that does not
decrypt (missing chunk, tampering, rotated-out secret, expired header) as no session.
"""
import logging
import time
from dataclasses import dataclass

from fastapi import Request, Response

from zauth import cookies
from zauth.audit import EVENT_SESSION_DECRYPT_FAIL, OUTCOME_FAIL, log_audit
from zauth.config import Config
from zauth.crypto import Cipher
from zauth.errors import DecryptionFailure
from zauth.session import Session

logger = logging.getLogger(__name__)

# Past this many bytes across all chunks many servers reject the request headers
MAX_TOTAL_COOKIE_BYTES = 16 * 1024
# Chunk names are sized for up to two-digit indices
_CHUNK_NAME_SUFFIX = ".99"


@dataclass(frozen=True)
class StoredSession:
    session: Session
    # Cookie lifetime bookkeeping from the authenticated header
    issued_at: int
    updated_at: int
    expires_at: int


class CookieStore:
    def __init__(self, config: Config, cipher: Cipher | None = None):
        self._config = config
        self._cipher = cipher or Cipher(config.secrets)
        self._name = config.session.name
        ck = config.session.cookie
        self._options = cookies.CookieOptions(
            path=ck.path,
            domain=ck.domain,
            http_only=ck.http_only,
            secure=ck.secure,
            same_site=ck.same_site,
        )

    @property
    def name(self) -> str:
        return self._name

    def _chunk_size(self) -> int:
        return cookies.MAX_COOKIE_BYTES - cookies.header_size(self._name + _CHUNK_NAME_SUFFIX, "", self._options)

    def _chunk_names(self, request: Request) -> list[str]:
        """Names of `name.<index>` cookies present on the request (any index)."""
        prefix = f"{self._name}."
        return [n for n in request.cookies if n.startswith(prefix) and n[len(prefix):].isdigit()]

    def has_cookies(self, request: Request) -> bool:
        return self._name in request.cookies or bool(self._chunk_names(request))

    def _gather(self, request: Request) -> str | None:
        single = request.cookies.get(self._name)
        if single:
            return single
        parts = []
        while f"{self._name}.{len(parts)}" in request.cookies:
            parts.append(request.cookies[f"{self._name}.{len(parts)}"])
        if not parts:
            return None
        if len(parts) != len(self._chunk_names(request)):
            # A gap in the indices: the tail cannot be trusted to belong to this value
            logger.warning("Session cookie chunks are not contiguous (found %d of %d)", len(parts), len(self._chunk_names(request)))
            return None
        return "".join(parts)

    def read(self, request: Request, now: float | None = None) -> StoredSession | None:
        """Return the stored session, or None when absent, expired or not authentic."""
        blob = self._gather(request)
        if blob is None:
            return None
        now = time.time() if now is None else now
        try:
            header = self._cipher.read_header(blob)
            exp = header.get("exp")
            if not isinstance(exp, int) or exp <= now:
                logger.debug("Session cookie expired or has no expiry (exp=%s)", exp)
                return None
            header, plaintext = self._cipher.decrypt(blob)
            session = Session.from_json(plaintext)
        except DecryptionFailure as e:
            logger.warning("Session cookie could not be decrypted: %s", e)
            log_audit(EVENT_SESSION_DECRYPT_FAIL, outcome=OUTCOME_FAIL, request=request, reason=str(e))
            return None
        except ValueError as e:
            logger.warning("Session cookie decrypted but payload is invalid: %s", e)
            return None
        return StoredSession(
            session=session,
            issued_at=int(header.get("iat", session.created_at)),
            updated_at=int(header.get("uat", session.created_at)),
            expires_at=int(header["exp"]),
        )

    def encode(self, session: Session, expires_at: int, now: float) -> str:
        header = {"iat": session.created_at, "uat": int(now), "exp": int(expires_at)}
        return self._cipher.encrypt(session.to_json().encode("utf-8"), header)

    def split(self, value: str) -> list[str]:
        """One element when the value fits a single cookie, otherwise fixed-size chunks."""
        if cookies.header_size(self._name, value, self._options) <= cookies.MAX_COOKIE_BYTES:
            return [value]
        size = self._chunk_size()
        return [value[i:i + size] for i in range(0, len(value), size)]

    def write(self, request: Request, response: Response, session: Session, expires_at: int, now: float | None = None) -> None:
        """Encrypt and set the session cookie(s); expire leftovers from a previous, differently sized value."""
        now = time.time() if now is None else now
        value = self.encode(session, expires_at, now)
        max_age = None if self._config.session.cookie.transient else max(0, int(expires_at - now))
        chunks = self.split(value)
        if len(value) > MAX_TOTAL_COOKIE_BYTES:
            logger.warning(
                "Session cookie is %d bytes across %d cookies; requests may exceed server header limits",
                len(value),
                len(chunks),
            )

        if len(chunks) == 1:
            cookies.set_cookie(response, self._name, value, self._options, max_age=max_age)
            for stale in self._chunk_names(request):
                cookies.clear(response, stale, self._options)
            return

        written = set()
        for index, chunk in enumerate(chunks):
            name = f"{self._name}.{index}"
            cookies.set_cookie(response, name, chunk, self._options, max_age=max_age)
            written.add(name)
        if self._name in request.cookies:
            cookies.clear(response, self._name, self._options)
        for stale in self._chunk_names(request):
            if stale not in written:
                cookies.clear(response, stale, self._options)

    def clear(self, request: Request, response: Response) -> None:
        """Expire the unchunked cookie and every chunk the browser sent."""
        cookies.clear(response, self._name, self._options)
        for name in self._chunk_names(request):
            cookies.clear(response, name, self._options)
