"""Cryptographic utilities for key material at rest.

Two envelopes, both AES-256-GCM:

- Vault: key derived from the user's password with PBKDF2-HMAC-SHA256.
  JSON ``{"salt", "iv", "ct", "v": 2}`` with base64 fields.
- Session: random 256-bit key kept next to the blob in the volatile store.
  JSON ``{"iv", "ct"}``.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chainvault.errors import AuthFailureError, IncorrectPasswordError

logger = logging.getLogger(__name__)

VAULT_VERSION = 2
SALT_SIZE = 16
IV_SIZE = 12
KEY_SIZE = 32
DEFAULT_ITERATIONS = 100_000


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: str) -> bytes:
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    return base64.b64decode(value.encode("ascii"), validate=True)


def derive_key_from_password(
    password: str,
    salt: Optional[bytes] = None,
    iterations: int = DEFAULT_ITERATIONS,
) -> tuple[bytes, bytes]:
    """Derive an AES-256 key from a password using PBKDF2.

    Args:
        password: User-provided password
        salt: Optional salt (generated if not provided)
        iterations: PBKDF2 iteration count

    Returns:
        Tuple of (32-byte key, salt)
    """
    if salt is None:
        salt = os.urandom(SALT_SIZE)

    key = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations,
        dklen=KEY_SIZE,
    )
    return key, salt


def generate_session_key() -> bytes:
    """Generate a random 256-bit session key."""
    return AESGCM.generate_key(bit_length=256)


def encrypt_vault(plaintext: str, password: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Encrypt key material under a password.

    Returns:
        JSON string ``{"salt", "iv", "ct", "v"}``
    """
    key, salt = derive_key_from_password(password, iterations=iterations)
    iv = os.urandom(IV_SIZE)
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return json.dumps({
        "salt": _b64encode(salt),
        "iv": _b64encode(iv),
        "ct": _b64encode(ct),
        "v": VAULT_VERSION,
    })


def decrypt_vault(blob: str, password: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    """Decrypt a vault produced by encrypt_vault.

    Raises:
        IncorrectPasswordError: On a wrong password or any corruption of the
            blob. The two cases are indistinguishable to the caller.
    """
    try:
        salt, iv, ct = _parse_vault(blob)
    except (ValueError, KeyError, TypeError, AttributeError, binascii.Error):
        # Same key derivation cost as a wrong password
        derive_key_from_password(password, bytes(SALT_SIZE), iterations)
        raise IncorrectPasswordError() from None

    key, _ = derive_key_from_password(password, salt, iterations)
    try:
        return AESGCM(key).decrypt(iv, ct, None).decode("utf-8")
    except (InvalidTag, ValueError):
        raise IncorrectPasswordError() from None


def _parse_vault(blob: str) -> tuple[bytes, bytes, bytes]:
    """Split a vault envelope into (salt, iv, ct)."""
    data = json.loads(blob)
    if not isinstance(data, dict):
        raise ValueError("vault envelope must be an object")
    salt = _b64decode(data["salt"])
    iv = _b64decode(data["iv"])
    ct = _b64decode(data["ct"])
    if len(salt) != SALT_SIZE or len(iv) != IV_SIZE:
        raise ValueError("bad envelope sizes")
    return salt, iv, ct


class SessionEncryptor:
    """Encrypts and decrypts the session blob with a raw AES-256 key.

    Usage:
        key = generate_session_key()
        blob = SessionEncryptor(key).encrypt(payload)
        payload = SessionEncryptor(key).decrypt(blob)
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise AuthFailureError("Session key must be 32 bytes")
        self._aes = AESGCM(key)

    @classmethod
    def from_encoded(cls, encoded_key: str) -> "SessionEncryptor":
        """Build from a base64-encoded key as kept in the volatile store."""
        try:
            return cls(_b64decode(encoded_key))
        except (ValueError, binascii.Error):
            raise AuthFailureError("Malformed session key") from None

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_SIZE)
        ct = self._aes.encrypt(iv, plaintext.encode("utf-8"), None)
        return json.dumps({"iv": _b64encode(iv), "ct": _b64encode(ct)})

    def decrypt(self, blob: str) -> str:
        """Decrypt a session blob.

        Raises:
            AuthFailureError: If the blob is malformed or fails authentication
        """
        try:
            data = json.loads(blob)
            iv = _b64decode(data["iv"])
            ct = _b64decode(data["ct"])
            return self._aes.decrypt(iv, ct, None).decode("utf-8")
        except (InvalidTag, ValueError, KeyError, TypeError, AttributeError, binascii.Error):
            raise AuthFailureError("Session blob could not be decrypted") from None


def encode_key(key: bytes) -> str:
    """Base64-encode a raw key for storage."""
    return _b64encode(key)
