"""
Binary stream framing for script delivery.

Layout::

    header  >IHH  total length, protocol version, flags
    chunk   >HH   index, size (0x8000 marks the last chunk), then data
    footer  >II   checksum of the plaintext, length confirmation

Chunk data is XOR-obfuscated with a position-dependent key stream. The
checksum is an integrity check only; confidentiality comes from the
AEAD chunking path.
"""

from __future__ import annotations

import base64
import binascii
import struct

from shadowgate.common.exceptions import IntegrityFailure

BINARY_VERSION = 0x0102
FLAG_ENCRYPTED = 0x01
FLAG_COMPRESSED = 0x02
FLAG_CHUNKED = 0x04
FLAG_SIGNED = 0x08
DEFAULT_FLAGS = FLAG_ENCRYPTED | FLAG_CHUNKED

LAST_CHUNK = 0x8000
MAX_CHUNK_SIZE = 0x7FFF
DEFAULT_CHUNK_SIZE = 4096

HEADER = struct.Struct(">IHH")
CHUNK_HEADER = struct.Struct(">HH")
FOOTER = struct.Struct(">II")


class BinaryStream:
    """Builds and parses framed, XOR-obfuscated payload streams."""

    @staticmethod
    def checksum(data: bytes) -> int:
        value = 0
        for byte in data:
            value = (value * 31 + byte) & 0x7FFFFFFF
        return value

    @staticmethod
    def xor_transform(data: bytes, key: str | bytes, salt: str | bytes = b"") -> bytes:
        """Positional XOR; applying it twice with the same key restores data."""
        key_bytes = key.encode() if isinstance(key, str) else key
        salt_bytes = salt.encode() if isinstance(salt, str) else salt
        if not key_bytes:
            msg = "XOR key must not be empty"
            raise ValueError(msg)
        key_len = len(key_bytes)
        salt_len = len(salt_bytes)
        out = bytearray(len(data))
        for i, byte in enumerate(data):
            salt_byte = salt_bytes[i % salt_len] if salt_len else 0
            out[i] = byte ^ key_bytes[i % key_len] ^ ((i * 7 + 13) % 256) ^ salt_byte
        return bytes(out)

    @staticmethod
    def build(
        payload: str | bytes,
        key: str,
        salt: str,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        flags: int = DEFAULT_FLAGS,
    ) -> bytes:
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            msg = f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}"
            raise ValueError(msg)
        plain = payload.encode() if isinstance(payload, str) else payload
        encrypted = BinaryStream.xor_transform(plain, key, salt)
        parts = [HEADER.pack(len(encrypted), BINARY_VERSION, flags)]
        chunk_count = -(-len(encrypted) // chunk_size)
        for index in range(chunk_count):
            data = encrypted[index * chunk_size : (index + 1) * chunk_size]
            size = len(data) | (LAST_CHUNK if index == chunk_count - 1 else 0)
            parts.append(CHUNK_HEADER.pack(index, size))
            parts.append(data)
        parts.append(FOOTER.pack(BinaryStream.checksum(plain), len(encrypted)))
        return b"".join(parts)

    @staticmethod
    def parse(stream: bytes, key: str, salt: str) -> bytes:
        """Reassemble and decrypt a stream. Fails closed on any damage."""
        if len(stream) < HEADER.size + FOOTER.size:
            msg = "Stream too short"
            raise IntegrityFailure(msg)
        total, version, _flags = HEADER.unpack_from(stream, 0)
        if version != BINARY_VERSION:
            msg = "Unsupported stream version"
            raise IntegrityFailure(msg)
        checksum, confirmed = FOOTER.unpack_from(stream, len(stream) - FOOTER.size)
        if confirmed != total:
            msg = "Length mismatch"
            raise IntegrityFailure(msg)

        body_end = len(stream) - FOOTER.size
        offset = HEADER.size
        chunks: dict[int, bytes] = {}
        saw_last = False
        while offset < body_end:
            if saw_last or offset + CHUNK_HEADER.size > body_end:
                msg = "Malformed chunk sequence"
                raise IntegrityFailure(msg)
            index, size_field = CHUNK_HEADER.unpack_from(stream, offset)
            size = size_field & MAX_CHUNK_SIZE
            saw_last = bool(size_field & LAST_CHUNK)
            offset += CHUNK_HEADER.size
            if offset + size > body_end or index in chunks:
                msg = "Truncated or duplicated chunk"
                raise IntegrityFailure(msg)
            chunks[index] = stream[offset : offset + size]
            offset += size

        if total and not saw_last:
            msg = "Missing final chunk"
            raise IntegrityFailure(msg)
        if sorted(chunks) != list(range(len(chunks))):
            msg = "Chunk indices out of sequence"
            raise IntegrityFailure(msg)
        encrypted = b"".join(chunks[i] for i in range(len(chunks)))
        if len(encrypted) != total:
            msg = "Length mismatch"
            raise IntegrityFailure(msg)
        plain = BinaryStream.xor_transform(encrypted, key, salt)
        if BinaryStream.checksum(plain) != checksum:
            msg = "Checksum mismatch"
            raise IntegrityFailure(msg)
        return plain

    @staticmethod
    def encode(
        payload: str | bytes, key: str, salt: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> tuple[str, int]:
        """Build a stream for HTTP transport. Returns (base64, checksum)."""
        plain = payload.encode() if isinstance(payload, str) else payload
        stream = BinaryStream.build(plain, key, salt, chunk_size)
        return base64.b64encode(stream).decode(), BinaryStream.checksum(plain)

    @staticmethod
    def decode(stream_b64: str, key: str, salt: str) -> bytes:
        try:
            stream = base64.b64decode(stream_b64, validate=True)
        except binascii.Error as err:
            msg = "Invalid base64 stream"
            raise IntegrityFailure(msg) from err
        return BinaryStream.parse(stream, key, salt)
