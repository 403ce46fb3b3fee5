"""
Script payload encoding for the validation response.
"""

from __future__ import annotations

import base64
import uuid

from shadowgate.common.crypto import CryptoUtils
from shadowgate.server.binary_stream import BinaryStream

DERIVED_KEY_LENGTH = 32
_INT31 = 2147483647
_UINT32 = 0xFFFFFFFF


def encode_watermark(text: str, seed: int) -> list[int]:
    return [ord(ch) ^ ((seed + i * 7) % 256) for i, ch in enumerate(text)]


def apply_watermark(content: str, key_id: str, now_ms: int) -> str:
    """Prefix content with a comment that identifies the key it was issued to."""
    numbers = encode_watermark(f"WM:{key_id}:{now_ms}", now_ms % 100000)
    return f"--[[{','.join(str(n) for n in numbers)}]]\n{content}"


def derivation_salt(key_id: str, hwid: str, timestamp: int, static_salt: str) -> str:
    digest = CryptoUtils.sha256_hex(f"{key_id}:{hwid}:{timestamp}:{static_salt}")
    return digest[:12] + uuid.uuid4().hex[:16]


def derive_delivery_key(salt: str, hwid: str, session_key: str, timestamp: int) -> str:
    """32 printable characters both sides can compute from shared inputs."""
    value = 0
    for ch in f"{salt}{hwid}{session_key}{timestamp}":
        value = ((value * 31) ^ ord(ch)) & _UINT32
        value %= _INT31
    chars = []
    seed = value
    for _ in range(DERIVED_KEY_LENGTH):
        seed = ((seed * 1103515245 + 12345) ^ seed) & _UINT32
        chars.append(chr(seed % 95 + 32))
    return "".join(chars)


def xor_encode(script: str, key: str) -> str:
    return base64.b64encode(BinaryStream.xor_transform(script.encode(), key)).decode()


def xor_decode(encoded: str, key: str) -> str:
    return BinaryStream.xor_transform(base64.b64decode(encoded), key).decode()
