"""Encryption of stored OAuth refresh tokens.

Envelope format: ``v1:`` + base64(JSON{v, alg, iv, tag, data}) with
AES-256-GCM. The key comes from TOKEN_ENCRYPTION_KEY: base64 for exactly 32
bytes, otherwise the SHA-256 digest of the raw string.
"""

import base64
import binascii
import hashlib
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from appforge.config import Settings, get_settings
from appforge.core.errors import ConfigurationError

ENVELOPE_PREFIX = "v1:"
_ALGORITHM = "aes-256-gcm"
_IV_BYTES = 12
_TAG_BYTES = 16


class TokenDecryptionError(ValueError):
    """The stored envelope is malformed or was encrypted under another key."""


def _encryption_key(settings: Settings | None = None) -> bytes:
    raw = (settings or get_settings()).token_encryption_key.strip()
    if not raw:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not set")

    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        decoded = b""
    if len(decoded) == 32:
        return decoded
    return hashlib.sha256(raw.encode("utf-8")).digest()


def encrypt_token(plaintext: str, settings: Settings | None = None) -> str:
    """Encrypt a token into a ``v1:`` envelope."""
    if not plaintext:
        raise ValueError("plaintext must be a non-empty string")

    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(_encryption_key(settings)).encrypt(iv, plaintext.encode("utf-8"), None)
    data, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]

    payload = {
        "v": 1,
        "alg": _ALGORITHM,
        "iv": _b64encode(iv),
        "tag": _b64encode(tag),
        "data": _b64encode(data),
    }
    return ENVELOPE_PREFIX + _b64encode(json.dumps(payload).encode("utf-8"))


def decrypt_token(envelope: str, settings: Settings | None = None) -> str:
    """Decrypt a ``v1:`` envelope; raises TokenDecryptionError on any fault."""
    if not envelope or not envelope.startswith(ENVELOPE_PREFIX):
        raise TokenDecryptionError("Unsupported token envelope")

    try:
        payload = json.loads(base64.b64decode(envelope[len(ENVELOPE_PREFIX) :], validate=True))
        if payload.get("v") != 1 or payload.get("alg") != _ALGORITHM:
            raise TokenDecryptionError("Unsupported token envelope version")
        iv = base64.b64decode(payload["iv"], validate=True)
        tag = base64.b64decode(payload["tag"], validate=True)
        data = base64.b64decode(payload["data"], validate=True)
    except (binascii.Error, ValueError, KeyError, TypeError, AttributeError) as e:
        if isinstance(e, TokenDecryptionError):
            raise
        raise TokenDecryptionError("Malformed token envelope") from e

    try:
        plaintext = AESGCM(_encryption_key(settings)).decrypt(iv, data + tag, None)
    except (InvalidTag, ValueError) as e:
        raise TokenDecryptionError("Token authentication failed") from e
    return plaintext.decode("utf-8")


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
