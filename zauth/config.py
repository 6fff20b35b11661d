"""
zauth configuration.
Layered resolution: defaults -> ZAUTH_* environment -> explicit keyword overrides (explicit always wins).
Resolved once at startup into an immutable Config; request handling never reads the environment.
"""
import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

from zauth.errors import ConfigurationError

# Claims stripped from the ID token before the session cookie is written
DEFAULT_IDENTITY_CLAIM_FILTER = (
    "aud",
    "iss",
    "iat",
    "exp",
    "nbf",
    "nonce",
    "azp",
    "auth_time",
    "s_hash",
    "at_hash",
    "c_hash",
)

_FALSEY = {"n", "no", "false", "0", "off"}
_SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_SAME_SITE_VALUES = {"lax", "strict", "none"}
_RESPONSE_MODES = {"query", "form_post"}


def default_login_state(request, options) -> dict:
    """Login state carried through the IdP round trip; returnTo is filled in by the flow when absent."""
    return {"returnTo": options.return_to} if options.return_to else {}


_DEFAULTS: dict[str, Any] = {
    "secret": None,
    "issuer_base_url": None,
    "base_url": None,
    "client_id": None,
    "client_secret": None,
    "clock_tolerance": 60,
    "http_timeout": 5.0,
    "idp_logout": True,
    "zauth_logout": True,
    "id_token_signing_alg": "RS256",
    "legacy_same_site_cookie": False,
    "identity_claim_filter": DEFAULT_IDENTITY_CLAIM_FILTER,
    "organization": None,
    "transient_max_age": 600,
    "use_pkce": True,
    "get_login_state": default_login_state,
    "after_callback": None,
    "after_refresh": None,
    "after_refetch": None,
    "authorization_params": {
        "response_type": "code",
        "response_mode": "query",
        "scope": "openid profile email",
        "audience": None,
        "extra": {},
    },
    "routes": {
        "callback": "/api/auth/callback",
        "login": "/api/auth/login",
        "post_logout_redirect": None,
    },
    "session": {
        "name": "appSession",
        "rolling": True,
        "rolling_duration": 24 * 60 * 60,
        "absolute_duration": 7 * 24 * 60 * 60,
        "cookie": {
            "domain": None,
            "path": "/",
            "transient": False,
            "http_only": True,
            "secure": None,
            "same_site": "lax",
        },
    },
}


@dataclass(frozen=True)
class CookieConfig:
    domain: str | None
    path: str
    transient: bool
    http_only: bool
    secure: bool
    same_site: str


@dataclass(frozen=True)
class SessionConfig:
    name: str
    rolling: bool
    rolling_duration: int
    # False disables the absolute cap
    absolute_duration: int | bool
    cookie: CookieConfig


@dataclass(frozen=True)
class RoutesConfig:
    callback: str
    login: str
    post_logout_redirect: str


@dataclass(frozen=True)
class AuthorizationParams:
    response_type: str
    response_mode: str
    scope: str
    audience: str | None = None
    extra: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def as_dict(self) -> dict[str, str]:
        """Parameters sent on every authorization request (before per-call overrides)."""
        params = {"response_type": self.response_type, "scope": self.scope}
        if self.response_mode != "query":
            params["response_mode"] = self.response_mode
        if self.audience:
            params["audience"] = self.audience
        params.update(self.extra)
        return params


@dataclass(frozen=True)
class Config:
    secrets: tuple[str, ...]
    issuer_base_url: str
    base_url: str
    client_id: str
    client_secret: str | None
    clock_tolerance: int
    http_timeout: float
    idp_logout: bool
    zauth_logout: bool
    id_token_signing_alg: str
    legacy_same_site_cookie: bool
    identity_claim_filter: tuple[str, ...]
    organization: str | None
    transient_max_age: int
    use_pkce: bool
    authorization_params: AuthorizationParams
    routes: RoutesConfig
    session: SessionConfig
    get_login_state: Callable = default_login_state
    after_callback: Callable | None = None
    after_refresh: Callable | None = None
    after_refetch: Callable | None = None

    @property
    def callback_url(self) -> str:
        return _join_url(self.base_url, self.routes.callback)

    @property
    def uses_form_post(self) -> bool:
        return self.authorization_params.response_mode == "form_post"

    def absolute_url(self, path: str) -> str:
        """path resolved against base_url; absolute URLs are returned unchanged."""
        return _join_url(self.base_url, path)


def _join_url(base: str, path: str) -> str:
    if re.match(r"^https?://", path):
        return path
    return f"{base.rstrip('/')}/{path.lstrip('/')}"


def _bool(value: str | None) -> bool | None:
    """Env boolean: unset/empty -> None (use lower layer); n/no/false/0/off -> False; anything else True."""
    if value is None or value.strip() == "":
        return None
    return value.strip().lower() not in _FALSEY


def _num(value: str | None) -> float | None:
    if value is None or value.strip() == "":
        return None
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"Expected a number, got {value!r}") from None


def _int(value: str | None) -> int | None:
    n = _num(value)
    return None if n is None else int(n)


def _absolute_duration(value: str | None) -> int | bool | None:
    """ZAUTH_SESSION_ABSOLUTE_DURATION is a number of seconds, or a boolean (false disables the cap)."""
    if value is None or value.strip() == "":
        return None
    try:
        return int(float(value))
    except ValueError:
        # "true" keeps the default cap
        return None if _bool(value) else False


def _secrets_from_env(value: str | None) -> list[str] | None:
    if value is None or value.strip() == "":
        return None
    return [s.strip() for s in value.split(",") if s.strip()]


def _http_timeout_from_env(value: str | None) -> float | None:
    # Milliseconds in the environment, seconds internally
    ms = _num(value)
    return None if ms is None else ms / 1000.0


def _env_layer(env: Mapping[str, str]) -> dict:
    return {
        "secret": _secrets_from_env(env.get("ZAUTH_SECRET")),
        "issuer_base_url": env.get("ZAUTH_ISSUER_BASE_URL"),
        "base_url": env.get("ZAUTH_BASE_URL"),
        "client_id": env.get("ZAUTH_CLIENT_ID"),
        "client_secret": env.get("ZAUTH_CLIENT_SECRET"),
        "clock_tolerance": _int(env.get("ZAUTH_CLOCK_TOLERANCE")),
        "http_timeout": _http_timeout_from_env(env.get("ZAUTH_HTTP_TIMEOUT")),
        "idp_logout": _bool(env.get("ZAUTH_IDP_LOGOUT")),
        "zauth_logout": _bool(env.get("ZAUTH_LOGOUT")),
        "id_token_signing_alg": env.get("ZAUTH_ID_TOKEN_SIGNING_ALG"),
        "legacy_same_site_cookie": _bool(env.get("ZAUTH_LEGACY_SAME_SITE_COOKIE")),
        "organization": env.get("ZAUTH_ORGANIZATION"),
        "transient_max_age": _int(env.get("ZAUTH_TRANSIENT_MAX_AGE")),
        "authorization_params": {
            "scope": env.get("ZAUTH_SCOPE"),
            "audience": env.get("ZAUTH_AUDIENCE"),
        },
        "routes": {
            "callback": env.get("ZAUTH_CALLBACK"),
            "login": env.get("ZAUTH_LOGIN"),
            "post_logout_redirect": env.get("ZAUTH_POST_LOGOUT_REDIRECT"),
        },
        "session": {
            "name": env.get("ZAUTH_SESSION_NAME"),
            "rolling": _bool(env.get("ZAUTH_SESSION_ROLLING")),
            "rolling_duration": _int(env.get("ZAUTH_SESSION_ROLLING_DURATION")),
            "absolute_duration": _absolute_duration(env.get("ZAUTH_SESSION_ABSOLUTE_DURATION")),
            "cookie": {
                "domain": env.get("ZAUTH_COOKIE_DOMAIN"),
                "path": env.get("ZAUTH_COOKIE_PATH"),
                "transient": _bool(env.get("ZAUTH_COOKIE_TRANSIENT")),
                "http_only": _bool(env.get("ZAUTH_COOKIE_HTTP_ONLY")),
                "secure": _bool(env.get("ZAUTH_COOKIE_SECURE")),
                "same_site": env.get("ZAUTH_COOKIE_SAME_SITE"),
            },
        },
    }


def _merge(base: dict, layer: Mapping, *, skip_none: bool) -> dict:
    """Field-by-field merge. Env layer skips None (unset); explicit overrides apply as given."""
    merged = dict(base)
    for key, value in layer.items():
        if skip_none and value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping) and key != "extra":
            merged[key] = _merge(dict(merged[key]), value, skip_none=skip_none)
        elif isinstance(value, Mapping) and key == "extra":
            merged[key] = {**merged.get(key, {}), **value}
        else:
            merged[key] = value
    return merged


def _check_keys(overrides: Mapping, defaults: Mapping, prefix: str = "") -> None:
    for key, value in overrides.items():
        if key not in defaults:
            raise ConfigurationError(f"Unknown configuration option: {prefix}{key}")
        if isinstance(value, Mapping) and isinstance(defaults[key], Mapping) and key != "extra":
            _check_keys(value, defaults[key], prefix=f"{prefix}{key}.")


def load_config(env: Mapping[str, str] | None = None, **overrides: Any) -> Config:
    """
    Resolve configuration from defaults, the environment and explicit overrides, then validate.
    Nested groups (session, session.cookie, routes, authorization_params) may be passed as partial dicts.
    Raises ConfigurationError on missing required values or inconsistent settings.
    """
    _check_keys(overrides, _DEFAULTS)
    if "secret" in overrides and isinstance(overrides["secret"], str):
        overrides = {**overrides, "secret": [overrides["secret"]]}
    values = _merge(_DEFAULTS, _env_layer(os.environ if env is None else env), skip_none=True)
    values = _merge(values, overrides, skip_none=False)
    return _build(values)


def _require(values: dict, key: str, env_name: str) -> str:
    value = values.get(key)
    if not value:
        raise ConfigurationError(f"{key} is required (set {env_name} or pass {key}=...)")
    return value


def _build(values: dict) -> Config:
    secrets = values.get("secret") or []
    if isinstance(secrets, str):
        secrets = [secrets]
    secrets = tuple(s for s in secrets if s)
    if not secrets:
        raise ConfigurationError("secret is required (set ZAUTH_SECRET or pass secret=...)")

    issuer_base_url = _require(values, "issuer_base_url", "ZAUTH_ISSUER_BASE_URL").rstrip("/")
    base_url = _require(values, "base_url", "ZAUTH_BASE_URL").rstrip("/")
    if not re.match(r"^https?://", base_url):
        base_url = f"https://{base_url}"
    client_id = _require(values, "client_id", "ZAUTH_CLIENT_ID")

    ap = values["authorization_params"]
    if ap.get("response_type") != "code":
        raise ConfigurationError("authorization_params.response_type must be 'code'")
    if ap.get("response_mode") not in _RESPONSE_MODES:
        raise ConfigurationError(f"authorization_params.response_mode must be one of {sorted(_RESPONSE_MODES)}")
    scope = ap.get("scope") or ""
    if "openid" not in scope.split():
        raise ConfigurationError("authorization_params.scope must contain 'openid'")
    authorization_params = AuthorizationParams(
        response_type=ap["response_type"],
        response_mode=ap["response_mode"],
        scope=scope,
        audience=ap.get("audience"),
        extra=MappingProxyType(dict(ap.get("extra") or {})),
    )

    alg = values["id_token_signing_alg"] or ""
    if not alg or alg.lower() == "none":
        raise ConfigurationError("id_token_signing_alg must be a real signing algorithm, not 'none'")
    if values["clock_tolerance"] < 0:
        raise ConfigurationError("clock_tolerance must be >= 0")
    if values["http_timeout"] <= 0:
        raise ConfigurationError("http_timeout must be > 0")
    if values["transient_max_age"] <= 0:
        raise ConfigurationError("transient_max_age must be > 0")

    sess = values["session"]
    ck = sess["cookie"]
    if not _SESSION_NAME_RE.match(sess["name"] or ""):
        raise ConfigurationError("session.name must only contain letters, numbers and underscores")
    absolute = sess["absolute_duration"]
    if absolute is True:
        absolute = _DEFAULTS["session"]["absolute_duration"]
    if absolute is not False and (not isinstance(absolute, int) or absolute <= 0):
        raise ConfigurationError("session.absolute_duration must be a positive number of seconds or False")
    if not sess["rolling"] and absolute is False:
        raise ConfigurationError("session.absolute_duration must be set when session.rolling is False")
    if sess["rolling"] and int(sess["rolling_duration"]) <= 0:
        raise ConfigurationError("session.rolling_duration must be > 0 when session.rolling is True")
    same_site = (ck["same_site"] or "lax").lower()
    if same_site not in _SAME_SITE_VALUES:
        raise ConfigurationError(f"session.cookie.same_site must be one of {sorted(_SAME_SITE_VALUES)}")
    secure = ck["secure"] if ck["secure"] is not None else base_url.startswith("https://")
    if same_site == "none" and not secure:
        raise ConfigurationError("session.cookie.same_site='none' requires a secure cookie")
    if authorization_params.response_mode == "form_post" and not secure:
        raise ConfigurationError("response_mode 'form_post' needs SameSite=None cookies, which require secure=True")

    session = SessionConfig(
        name=sess["name"],
        rolling=bool(sess["rolling"]),
        rolling_duration=int(sess["rolling_duration"]),
        absolute_duration=absolute,
        cookie=CookieConfig(
            domain=ck["domain"],
            path=ck["path"] or "/",
            transient=bool(ck["transient"]),
            http_only=bool(ck["http_only"]),
            secure=bool(secure),
            same_site=same_site,
        ),
    )

    rt = values["routes"]
    routes = RoutesConfig(
        callback=rt["callback"],
        login=rt["login"],
        post_logout_redirect=rt["post_logout_redirect"] or base_url,
    )

    return Config(
        secrets=secrets,
        issuer_base_url=issuer_base_url,
        base_url=base_url,
        client_id=client_id,
        client_secret=values["client_secret"] or None,
        clock_tolerance=int(values["clock_tolerance"]),
        http_timeout=float(values["http_timeout"]),
        idp_logout=bool(values["idp_logout"]),
        zauth_logout=bool(values["zauth_logout"]),
        id_token_signing_alg=alg,
        legacy_same_site_cookie=bool(values["legacy_same_site_cookie"]),
        identity_claim_filter=tuple(values["identity_claim_filter"]),
        organization=values["organization"] or None,
        transient_max_age=int(values["transient_max_age"]),
        use_pkce=bool(values["use_pkce"]),
        authorization_params=authorization_params,
        routes=routes,
        session=session,
        get_login_state=values["get_login_state"] or default_login_state,
        after_callback=values["after_callback"],
        after_refresh=values["after_refresh"],
        after_refetch=values["after_refetch"],
    )
