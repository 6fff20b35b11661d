"""
Request-scoped session cache over the cookie store.
One SessionCache per request (kept on request.state), never shared across requests. The cookie is decrypted at
most once per request; changes are written back to the response by commit(), which the middleware runs on
every response that touched the session.
"""
import logging
import time
from dataclasses import replace
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from zauth.config import Config
from zauth.cookie_store import CookieStore, StoredSession
from zauth.session import Session

logger = logging.getLogger(__name__)

STATE_ATTR = "zauth_session_cache"


class SessionCache:
    def __init__(self, config: Config, store: CookieStore, request: Request, clock: Callable[[], float] = time.time):
        self._config = config
        self._store = store
        self._request = request
        self._clock = clock
        self._loaded = False
        self._stored: StoredSession | None = None
        self._session: Session | None = None
        # Cookies were sent but did not yield a session (tampered, expired, rotated out)
        self._invalid = False
        self._dirty = False
        self._destroyed = False
        self._written = False

    @classmethod
    def for_request(cls, request: Request, config: Config, store: CookieStore, clock: Callable[[], float] = time.time) -> "SessionCache":
        """The request's cache, created on first use."""
        cache = getattr(request.state, STATE_ATTR, None)
        if cache is None:
            cache = cls(config, store, request, clock=clock)
            setattr(request.state, STATE_ATTR, cache)
        return cache

    def _load(self) -> None:
        if self._loaded:
            return
        self._stored = self._store.read(self._request, now=self._clock())
        self._session = self._stored.session if self._stored else None
        self._invalid = self._stored is None and self._store.has_cookies(self._request)
        self._loaded = True

    def get(self) -> Session | None:
        """Current session, or None (no cookie, expired, or not authentic)."""
        self._load()
        return self._session

    def is_authenticated(self) -> bool:
        return self.get() is not None

    def compute_expires_at(self, created_at: int, now: float) -> int:
        """
        Cookie expiry under the configured policy.
        Rolling: now + rolling_duration, capped at created_at + absolute_duration unless that is disabled.
        Absolute only: created_at + absolute_duration.
        """
        cfg = self._config.session
        if cfg.rolling:
            expires_at = now + cfg.rolling_duration
            if cfg.absolute_duration is not False:
                expires_at = min(expires_at, created_at + cfg.absolute_duration)
        else:
            expires_at = created_at + cfg.absolute_duration
        return int(expires_at)

    def establish(self, session: Session) -> None:
        """Start a new session (after a successful callback). Replaces any previous one."""
        self._loaded = True
        self._session = session
        self._stored = None
        self._dirty = True
        self._destroyed = False

    def update(self, session: Session) -> None:
        """Replace the payload of the current session (e.g. refreshed tokens). created_at is preserved."""
        current = self.get()
        if current is None:
            raise ValueError("no session to update; use establish() after login")
        self._session = replace(session, created_at=current.created_at)
        self._dirty = True

    def destroy(self) -> None:
        self._loaded = True
        self._session = None
        self._stored = None
        self._destroyed = True
        self._dirty = False

    def commit(self, response: Response) -> None:
        """
        Write pending changes to the response. An unchanged rolling session is rewritten once per request
        to extend its window; an unchanged absolute session is left alone.
        """
        if not self._loaded:
            return
        if self._destroyed or (self._session is None and self._invalid):
            self._store.clear(self._request, response)
            self._destroyed = False
            self._invalid = False
            return
        if self._session is None:
            return
        if not self._dirty and (self._written or not self._config.session.rolling):
            return
        now = self._clock()
        expires_at = self.compute_expires_at(self._session.created_at, now)
        if expires_at <= now:
            logger.info("Session reached its absolute lifetime; clearing")
            self._session = None
            self._store.clear(self._request, response)
        else:
            self._store.write(self._request, response, self._session, expires_at, now=now)
        self._dirty = False
        self._written = True


class SessionCacheMiddleware(BaseHTTPMiddleware):
    """Commits the request's SessionCache (if any) onto the outgoing response."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        cache = getattr(request.state, STATE_ATTR, None)
        if cache is not None:
            cache.commit(response)
        return response
