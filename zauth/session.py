"""
Session payload stored (encrypted) in the session cookie: filtered identity claims plus the token set.
There is no server-side copy; whatever is here is the whole session.
"""
import json
import time
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping

from zauth.claims import Claims


@dataclass(frozen=True)
class Session:
    user: Claims
    # Set once when the session is established; carried unchanged through every update
    created_at: int
    access_token: str | None = None
    access_token_scope: str | None = None
    # Access token expiry (epoch seconds), independent of the session cookie's own expiry
    access_token_expires_at: int | None = None
    token_type: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None

    def access_token_expired_or_soon(self, buffer_seconds: int = 0, now: float | None = None) -> bool:
        """
        True if the access token has expired or expires within buffer_seconds (clock tolerance).
        A token without a known expiry is never considered expired.
        """
        if self.access_token_expires_at is None:
            return False
        now = time.time() if now is None else now
        return self.access_token_expires_at - buffer_seconds <= now

    def granted_scopes(self) -> set[str]:
        return set((self.access_token_scope or "").split())

    def with_tokens(self, tokens: Mapping[str, Any], now: float | None = None, requested_scope: str | None = None) -> "Session":
        """
        Return a copy with a new token set (token endpoint response). Keeps the old refresh/id token
        when the IdP does not rotate them. A response without `scope` was granted requested_scope
        (RFC 6749 section 5.1), or the previous scope when nothing specific was asked for.
        """
        now = time.time() if now is None else now
        expires_in = tokens.get("expires_in")
        expires_at = tokens.get("expires_at")
        if expires_at is None and expires_in is not None:
            expires_at = int(now) + int(expires_in)
        return replace(
            self,
            access_token=tokens.get("access_token") or self.access_token,
            access_token_scope=tokens.get("scope") or requested_scope or self.access_token_scope,
            access_token_expires_at=int(expires_at) if expires_at is not None else None,
            token_type=tokens.get("token_type") or self.token_type,
            refresh_token=tokens.get("refresh_token") or self.refresh_token,
            id_token=tokens.get("id_token") or self.id_token,
        )

    def to_json(self) -> str:
        data = {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}
        data["user"] = dict(self.user)
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def from_json(cls, data: str | bytes) -> "Session":
        """Raises ValueError if the payload is not a session."""
        raw = json.loads(data)
        if not isinstance(raw, dict) or not isinstance(raw.get("user"), dict) or not isinstance(raw.get("created_at"), int):
            raise ValueError("not a session payload")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in raw.items() if k in known}
        try:
            kwargs["user"] = Claims(raw["user"])
        except TypeError as e:
            raise ValueError(str(e)) from None
        return cls(**kwargs)


def new_session(user: Mapping[str, Any], tokens: Mapping[str, Any], now: float | None = None) -> Session:
    now = time.time() if now is None else now
    return Session(user=Claims(user), created_at=int(now)).with_tokens(tokens, now=now)
