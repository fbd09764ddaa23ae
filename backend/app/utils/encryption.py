"""RSA-OAEP token codec for the MMG gateway

Checkout payloads are encrypted with the gateway's public key; callback tokens
are decrypted with our private key. Both directions use OAEP with SHA-256 for
the main digest and for MGF1, and URL-safe base64 without padding framing.
"""
import base64
import binascii
import json
import logging
from functools import lru_cache
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from app.core.config import settings

logger = logging.getLogger(__name__)

_URL_SAFE_ALPHABET = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


class DecodeError(ValueError):
    """Raised when a callback token cannot be turned back into a payload"""


class EncryptionConfigError(ValueError):
    """Raised when the RSA key material is missing or unreadable"""


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None
    )


@lru_cache(maxsize=4)
def _load_public_key(pem: str):
    try:
        return serialization.load_pem_public_key(pem.encode())
    except ValueError as e:
        raise EncryptionConfigError(f"Invalid MMG_PUBLIC_KEY: {e}")


@lru_cache(maxsize=4)
def _load_private_key(pem: str):
    try:
        return serialization.load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError) as e:
        raise EncryptionConfigError(f"Invalid MMG_PRIVATE_KEY: {e}")


def serialize(obj: Any) -> bytes:
    """Canonical byte form of a payload (compact, ASCII-escaped JSON)"""
    return json.dumps(obj, separators=(",", ":")).encode("latin-1")


def encrypt(obj: Any, public_key_pem: Optional[str] = None) -> bytes:
    """Encrypt a JSON-serializable object with the gateway public key

    Raises:
        EncryptionConfigError: If no public key is configured
        ValueError: If the payload is too large for the key size
    """
    pem = public_key_pem or settings.MMG_PUBLIC_KEY
    if not pem:
        raise EncryptionConfigError("MMG_PUBLIC_KEY is not configured")
    public_key = _load_public_key(pem)
    return public_key.encrypt(serialize(obj), _oaep())


def to_url_safe_token(data: bytes) -> str:
    """Base64 with '+' -> '-', '/' -> '_' and trailing '=' stripped"""
    return base64.b64encode(data).decode("ascii").replace("+", "-").replace("/", "_").rstrip("=")


def from_url_safe_token(token: str) -> bytes:
    """Reverse of to_url_safe_token

    Raises:
        DecodeError: If the token is empty, has characters outside the URL-safe
            alphabet, or has an impossible length
    """
    if not token:
        raise DecodeError("Token is empty")
    token = token.strip()
    if not set(token) <= _URL_SAFE_ALPHABET:
        raise DecodeError("Token contains characters outside the URL-safe base64 alphabet")
    if len(token) % 4 == 1:
        raise DecodeError("Token has an invalid length")

    padded = token + "=" * (-len(token) % 4)
    standard = padded.replace("-", "+").replace("_", "/")
    try:
        return base64.b64decode(standard, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Token is not valid base64: {e}")


def decrypt(token: str, private_key_pem: Optional[str] = None) -> Any:
    """Decrypt a URL-safe callback token into its JSON payload

    Raises:
        EncryptionConfigError: If no private key is configured
        DecodeError: On malformed framing, wrong key, tampering, or non-JSON plaintext
    """
    pem = private_key_pem or settings.MMG_PRIVATE_KEY
    if not pem:
        raise EncryptionConfigError("MMG_PRIVATE_KEY is not configured")
    private_key = _load_private_key(pem)

    ciphertext = from_url_safe_token(token)
    try:
        plaintext = private_key.decrypt(ciphertext, _oaep())
    except ValueError as e:
        logger.error(f"Decryption failed: {type(e).__name__}: {e}")
        raise DecodeError(f"Decryption failed: {type(e).__name__}: {e}")

    try:
        return json.loads(plaintext.decode("latin-1"))
    except ValueError as e:
        raise DecodeError(f"Decrypted payload is not valid JSON: {e}")
