"""
Identity claims from the IdP.
Claim values are JSON-shaped: str, int, float, bool, None, nested mappings and lists. Anything else is rejected
so that whatever goes into the session cookie serializes and comes back out unchanged.
"""
from typing import Any, Iterable, Mapping, Union

ClaimValue = Union[str, int, float, bool, None, "list[ClaimValue]", "dict[str, ClaimValue]"]


def _check_value(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Mapping):
        return {str(k): _check_value(v, f"{path}.{k}") for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_check_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
    raise TypeError(f"Unsupported claim value at {path}: {type(value).__name__}")


class Claims(dict):
    """Mapping of claim name -> ClaimValue with accessors for the well-known claims."""

    def __init__(self, data: Mapping[str, Any] | None = None):
        super().__init__({str(k): _check_value(v, str(k)) for k, v in (data or {}).items()})

    @property
    def sub(self) -> str | None:
        value = self.get("sub")
        return value if isinstance(value, str) else None

    @property
    def org_id(self) -> str | None:
        value = self.get("org_id")
        return value if isinstance(value, str) else None

    def filtered(self, names: Iterable[str]) -> "Claims":
        return filter_claims(self, names)


def filter_claims(claims: Mapping[str, Any], names: Iterable[str]) -> Claims:
    """Drop protocol-internal claims (aud, iss, nonce, ...) before they are persisted."""
    drop = set(names)
    return Claims({k: v for k, v in claims.items() if k not in drop})
