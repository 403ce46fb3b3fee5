"""
Authenticated chunk encryption for payload delivery.

The plaintext is padded with a random comment block, split into chunks and
each chunk sealed with AES-256-GCM under its own PBKDF2-derived key. A
whole-stream HMAC over the per-chunk content hashes lets the receiver reject
reordered or altered chunks before any decryption is attempted.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import random
import time
from typing import Callable

from shadowgate.common.crypto import PBKDF2_ITERATIONS, CryptoUtils
from shadowgate.common.exceptions import IntegrityFailure
from shadowgate.common.models import ChunkedPayload, EncryptedChunk

PADDING_MARKER = b"\n--[["
PADDING_END = b"]]"
MIN_PADDING = 100
MAX_EXTRA_PADDING = 1024
SALT_LENGTH = 32

logger = logging.getLogger(__name__)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _unb64(data: str) -> bytes:
    return base64.b64decode(data, validate=True)


class ChunkCipher:
    """Splits payloads into individually sealed chunks and reassembles them."""

    def __init__(
        self,
        chunk_size: int = 4096,
        iterations: int = PBKDF2_ITERATIONS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if chunk_size <= 0:
            msg = "chunk_size must be positive"
            raise ValueError(msg)
        self.chunk_size = chunk_size
        self.iterations = iterations
        self.clock = clock

    @staticmethod
    def generate_padding() -> bytes:
        size = random.randrange(MAX_EXTRA_PADDING) + MIN_PADDING
        return PADDING_MARKER + base64.b64encode(os.urandom(size)) + PADDING_END

    @staticmethod
    def strip_padding(data: bytes) -> bytes:
        head, marker, tail = data.rpartition(PADDING_MARKER)
        if not marker or not tail.endswith(PADDING_END):
            msg = "Payload padding missing"
            raise IntegrityFailure(msg)
        return head

    @staticmethod
    def stream_signature(chunks: list[EncryptedChunk], password: str) -> str:
        hashes = ":".join(CryptoUtils.sha256_hex(c.data) for c in chunks)
        return CryptoUtils.hmac_sign(hashes, password)

    def _chunk_key(self, password: str, salt: str, index: int) -> bytes:
        return CryptoUtils.derive_key(password, salt, index, self.iterations)

    def split(self, payload: str | bytes, password: str) -> ChunkedPayload:
        plain = payload.encode() if isinstance(payload, str) else payload
        padded = plain + self.generate_padding()
        salt = CryptoUtils.generate_token(SALT_LENGTH)

        chunks = []
        for index, start in enumerate(range(0, len(padded), self.chunk_size)):
            piece = padded[start : start + self.chunk_size]
            iv, ciphertext, tag = CryptoUtils.auth_encrypt(
                piece, self._chunk_key(password, salt, index)
            )
            chunks.append(
                EncryptedChunk(
                    index=index,
                    iv=_b64(iv),
                    data=_b64(ciphertext),
                    tag=_b64(tag),
                    size=len(piece),
                )
            )

        return ChunkedPayload(
            chunks=chunks,
            total_chunks=len(chunks),
            signature=self.stream_signature(chunks, password),
            salt=salt,
            timestamp=int(self.clock() * 1000),
        )

    def verify(self, payload: ChunkedPayload, password: str) -> bool:
        expected = self.stream_signature(payload.chunks, password)
        return CryptoUtils.timing_safe_equal(expected, payload.signature)

    def decrypt(self, payload: ChunkedPayload, password: str) -> bytes:
        """Verify the stream signature, then decrypt every chunk.

        Raises IntegrityFailure without returning partial output.
        """
        if not self.verify(payload, password):
            logger.warning("Chunk stream signature mismatch")
            msg = "Chunk signature mismatch"
            raise IntegrityFailure(msg)
        if payload.total_chunks != len(payload.chunks) or [
            c.index for c in payload.chunks
        ] != list(range(payload.total_chunks)):
            msg = "Chunk sequence damaged"
            raise IntegrityFailure(msg)

        pieces = []
        for chunk in payload.chunks:
            try:
                iv, ciphertext, tag = (
                    _unb64(chunk.iv),
                    _unb64(chunk.data),
                    _unb64(chunk.tag),
                )
            except binascii.Error as err:
                msg = "Chunk encoding damaged"
                raise IntegrityFailure(msg) from err
            plain = CryptoUtils.auth_decrypt(
                iv, ciphertext, tag, self._chunk_key(password, payload.salt, chunk.index)
            )
            if plain is None or len(plain) != chunk.size:
                msg = f"Chunk {chunk.index} failed authentication"
                raise IntegrityFailure(msg)
            pieces.append(plain)
        return self.strip_padding(b"".join(pieces))
