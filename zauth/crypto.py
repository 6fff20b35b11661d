"""
Authenticated encryption for the session cookie and signing for transient cookies.
Secrets rotate like signing keys: the first secret encrypts/signs new values, every secret is tried
when decrypting/verifying so sessions issued under a previous secret stay valid.
Keys are derived once per secret with HKDF-SHA256; nothing is derived per request.
"""
import base64
import json
import os

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from zauth.errors import DecryptionFailure

_KEY_BYTES = 32
_NONCE_BYTES = 12
_ENCRYPTION_INFO = b"zauth session cookie encryption"
_SIGNING_INFO = b"zauth transient cookie signing"


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode unpadded base64url. Raises ValueError on malformed input."""
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def derive_key(secret: str, info: bytes) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=_KEY_BYTES, salt=None, info=info)
    return hkdf.derive(secret.encode("utf-8"))


class Cipher:
    """
    AES-256-GCM with a fresh random nonce per call.
    Blob format: b64url(header_json).b64url(nonce).b64url(ciphertext||tag); the header is authenticated
    as associated data, so its expiry can be read before decryption but cannot be altered.
    """

    def __init__(self, secrets: tuple[str, ...] | list[str]):
        if not secrets:
            raise ValueError("at least one secret is required")
        self._keys = [AESGCM(derive_key(s, _ENCRYPTION_INFO)) for s in secrets]

    def encrypt(self, plaintext: bytes, header: dict) -> str:
        protected = b64url_encode(json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._keys[0].encrypt(nonce, plaintext, protected.encode("ascii"))
        return f"{protected}.{b64url_encode(nonce)}.{b64url_encode(ciphertext)}"

    @staticmethod
    def read_header(blob: str) -> dict:
        """Unauthenticated view of the header. Only use it to reject early (e.g. expired); never to accept."""
        try:
            header = json.loads(b64url_decode(blob.split(".", 1)[0]))
        except ValueError as e:
            raise DecryptionFailure(f"malformed header: {e}") from None
        if not isinstance(header, dict):
            raise DecryptionFailure("malformed header: not an object")
        return header

    def decrypt(self, blob: str) -> tuple[dict, bytes]:
        """Return (header, plaintext). Raises DecryptionFailure unless one of the secrets authenticates the blob."""
        parts = blob.split(".")
        if len(parts) != 3:
            raise DecryptionFailure("malformed blob: expected 3 segments")
        protected, nonce_b64, ciphertext_b64 = parts
        try:
            aad = protected.encode("ascii")
            nonce = b64url_decode(nonce_b64)
            ciphertext = b64url_decode(ciphertext_b64)
        except ValueError as e:
            raise DecryptionFailure(f"malformed blob: {e}") from None
        if len(nonce) != _NONCE_BYTES:
            raise DecryptionFailure("malformed blob: bad nonce length")
        for key in self._keys:
            try:
                plaintext = key.decrypt(nonce, ciphertext, aad)
            except InvalidTag:
                continue
            return self.read_header(blob), plaintext
        raise DecryptionFailure("no configured secret authenticates the blob")


class Signer:
    """HMAC-SHA256 signatures for transient cookie values: `value.signature`."""

    def __init__(self, secrets: tuple[str, ...] | list[str]):
        if not secrets:
            raise ValueError("at least one secret is required")
        self._keys = [derive_key(s, _SIGNING_INFO) for s in secrets]

    @staticmethod
    def _mac(key: bytes, value: str) -> hmac.HMAC:
        h = hmac.HMAC(key, hashes.SHA256())
        h.update(value.encode("utf-8"))
        return h

    def sign(self, value: str) -> str:
        signature = self._mac(self._keys[0], value).finalize()
        return f"{value}.{b64url_encode(signature)}"

    def verify(self, signed: str) -> str | None:
        """Return the original value if any secret's signature matches (constant-time compare), else None."""
        value, sep, signature_b64 = signed.rpartition(".")
        if not sep:
            return None
        try:
            signature = b64url_decode(signature_b64)
        except ValueError:
            return None
        for key in self._keys:
            try:
                self._mac(key, value).verify(signature)
            except InvalidSignature:
                continue
            return value
        return None
