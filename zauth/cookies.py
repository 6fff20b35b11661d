"""
Cookie transport over Starlette requests/responses.
set_cookie appends a Set-Cookie header, so several writers on one response accumulate instead of overwriting.
"""
from dataclasses import dataclass, replace

from fastapi import Request, Response

# Browsers cap a single cookie (name, value and attributes) at about 4KB
MAX_COOKIE_BYTES = 4096
# Upper bound used when sizing Max-Age in a header estimate
_MAX_AGE_WIDTH = len("; Max-Age=") + 10


@dataclass(frozen=True)
class CookieOptions:
    path: str = "/"
    domain: str | None = None
    http_only: bool = True
    secure: bool = False
    # None omits the SameSite attribute (legacy browsers)
    same_site: str | None = "lax"

    def without_same_site(self) -> "CookieOptions":
        return replace(self, same_site=None)


def get_all(request: Request) -> dict[str, str]:
    return dict(request.cookies)


def get(request: Request, name: str) -> str | None:
    return request.cookies.get(name)


def set_cookie(response: Response, name: str, value: str, options: CookieOptions, max_age: int | None = None) -> None:
    """Append a Set-Cookie header. max_age=None makes a browser-session cookie."""
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path=options.path,
        domain=options.domain,
        secure=options.secure,
        httponly=options.http_only,
        samesite=options.same_site,
    )


def clear(response: Response, name: str, options: CookieOptions) -> None:
    """Expire a cookie. Path and domain must match the ones it was set with or the browser keeps it."""
    response.delete_cookie(
        key=name,
        path=options.path,
        domain=options.domain,
        secure=options.secure,
        httponly=options.http_only,
        samesite=options.same_site,
    )


def header_size(name: str, value: str, options: CookieOptions) -> int:
    """Approximate byte size of the Set-Cookie header value for this cookie (upper bound for attributes)."""
    size = len(name) + 1 + len(value) + _MAX_AGE_WIDTH + len(f"; Path={options.path}")
    if options.domain:
        size += len(f"; Domain={options.domain}")
    if options.http_only:
        size += len("; HttpOnly")
    if options.secure:
        size += len("; Secure")
    if options.same_site:
        size += len(f"; SameSite={options.same_site}")
    return size
