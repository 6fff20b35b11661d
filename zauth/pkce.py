"""
PKCE (RFC 7636, S256 only), nonce and login-state helpers for the authorization request.
"""
import hashlib
import json
import secrets

from zauth.crypto import b64url_decode, b64url_encode


def generate_nonce() -> str:
    """Random value for ID token binding; 32 bytes of entropy, URL-safe."""
    return secrets.token_urlsafe(32)


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = b64url_encode(digest)
    return code_verifier, code_challenge


def encode_state(login_state: dict) -> str:
    """
    Opaque `state` parameter: base64url JSON of the login state plus a random `nonce` field, so the
    value is unguessable even when the login state itself is predictable (e.g. only returnTo).
    """
    payload = {**login_state, "nonce": generate_nonce()}
    return b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))


def decode_state(state: str) -> dict:
    """Inverse of encode_state. Returns {} for values that are not encoded login state."""
    try:
        payload = json.loads(b64url_decode(state))
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def generate_state(login_state: dict | None = None) -> str:
    """Opaque value for CSRF protection; returned unchanged by the IdP on the callback."""
    return encode_state(login_state or {})
