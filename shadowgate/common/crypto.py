"""Common cryptographic utilities.

All helpers are pure; verification failures come back as ``False`` or
``None`` rather than exceptions.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

TOKEN_ALPHABET = string.ascii_letters + string.digits
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class CryptoUtils:
    """Utility class for cryptographic operations."""

    @staticmethod
    def derive_key(
        password: str,
        salt: str,
        context: str | int = "",
        iterations: int = PBKDF2_ITERATIONS,
    ) -> bytes:
        """Derive a 256-bit key with PBKDF2-SHA256, scoped by context."""
        scoped_salt = f"{salt}:chunk:{context}" if context != "" else salt
        return PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=scoped_salt.encode(),
            iterations=iterations,
        ).derive(password.encode())

    @staticmethod
    def auth_encrypt(plaintext: bytes, key: bytes) -> tuple[bytes, bytes, bytes]:
        """Encrypt with AES-256-GCM. Returns (iv, ciphertext, tag)."""
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plaintext, None)
        return iv, sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    @staticmethod
    def auth_decrypt(iv: bytes, ciphertext: bytes, tag: bytes, key: bytes) -> bytes | None:
        """Decrypt AES-256-GCM output, or None if authentication fails."""
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH or len(key) != KEY_LENGTH:
            return None
        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return None

    @staticmethod
    def hmac_sign(data: str | bytes, secret: str | bytes) -> str:
        """HMAC-SHA256 hex signature."""
        if isinstance(data, str):
            data = data.encode()
        if isinstance(secret, str):
            secret = secret.encode()
        return hmac.new(secret, data, hashlib.sha256).hexdigest()

    @staticmethod
    def hmac_verify(data: str | bytes, signature: str, secret: str | bytes) -> bool:
        """Check an HMAC-SHA256 hex signature in constant time."""
        return CryptoUtils.timing_safe_equal(
            CryptoUtils.hmac_sign(data, secret), signature
        )

    @staticmethod
    def timing_safe_equal(a: str | bytes, b: str | bytes) -> bool:
        if isinstance(a, str):
            a = a.encode()
        if isinstance(b, str):
            b = b.encode()
        return hmac.compare_digest(a, b)

    @staticmethod
    def hash_identifier(value: str, static_salt: str) -> str:
        """Salted SHA-256 hex digest, used for hardware ids."""
        return hashlib.sha256((value + static_salt).encode()).hexdigest()

    @staticmethod
    def sha256_hex(data: str | bytes) -> str:
        if isinstance(data, str):
            data = data.encode()
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def generate_token(length: int = 64) -> str:
        """Random alphanumeric token."""
        return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))

    @staticmethod
    def generate_salt(num_bytes: int = 32) -> str:
        return secrets.token_hex(num_bytes)

    @staticmethod
    def b64url_encode(data: bytes) -> str:
        """Base64url without padding."""
        return base64.urlsafe_b64encode(data).rstrip(b"=").decode()

    @staticmethod
    def b64url_decode(data: str) -> bytes:
        padding = "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(data + padding)
