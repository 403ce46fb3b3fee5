import base64
from typing import Any

import pytest

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import IntegrityFailure
from shadowgate.server.chunk_encryption import PADDING_MARKER, ChunkCipher

PASSWORD = "derived-delivery-key"


@pytest.fixture
def cipher() -> ChunkCipher:
    return ChunkCipher(chunk_size=256, iterations=1000, clock=lambda: 1000.5)


def _flip_first_byte(data: str) -> str:
    raw = bytearray(base64.b64decode(data))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


@pytest.mark.parametrize("payload", [b"", b"a", b"print('x')" * 100, bytes(range(256)) * 8])
def test_round_trip(cipher: ChunkCipher, payload: bytes) -> None:
    chunked = cipher.split(payload, PASSWORD)
    assert chunked.total_chunks == len(chunked.chunks)
    assert [c.index for c in chunked.chunks] == list(range(chunked.total_chunks))
    assert chunked.timestamp == 1000500  # noqa: PLR2004
    assert len(chunked.salt) == 32  # noqa: PLR2004
    assert cipher.decrypt(chunked, PASSWORD) == payload


def test_padding_hides_length(cipher: ChunkCipher) -> None:
    chunked = cipher.split(b"tiny", PASSWORD)
    assert sum(c.size for c in chunked.chunks) >= len(b"tiny") + 100
    assert PADDING_MARKER not in b"tiny"


def test_payload_containing_marker_survives(cipher: ChunkCipher) -> None:
    payload = b"local s = 1" + PADDING_MARKER + b"comment]]\nprint(s)"
    assert cipher.decrypt(cipher.split(payload, PASSWORD), PASSWORD) == payload


def test_flipped_ciphertext_fails_before_decryption(
    cipher: ChunkCipher, monkeypatch: Any
) -> None:
    chunked = cipher.split(b"secret script" * 50, PASSWORD)
    chunked.chunks[1].data = _flip_first_byte(chunked.chunks[1].data)

    def must_not_decrypt(*_args: Any) -> bytes:
        msg = "decryption attempted"
        raise AssertionError(msg)

    monkeypatch.setattr(CryptoUtils, "auth_decrypt", staticmethod(must_not_decrypt))
    with pytest.raises(IntegrityFailure, match="signature"):
        cipher.decrypt(chunked, PASSWORD)


def test_reordered_chunks_fail(cipher: ChunkCipher) -> None:
    chunked = cipher.split(b"z" * 1000, PASSWORD)
    chunked.chunks[0], chunked.chunks[1] = chunked.chunks[1], chunked.chunks[0]
    with pytest.raises(IntegrityFailure):
        cipher.decrypt(chunked, PASSWORD)


def test_wrong_password_fails(cipher: ChunkCipher) -> None:
    chunked = cipher.split(b"payload", PASSWORD)
    assert not cipher.verify(chunked, "other")
    with pytest.raises(IntegrityFailure):
        cipher.decrypt(chunked, "other")


def test_tampered_tag_fails(cipher: ChunkCipher) -> None:
    chunked = cipher.split(b"payload", PASSWORD)
    chunked.chunks[0].tag = _flip_first_byte(chunked.chunks[0].tag)
    with pytest.raises(IntegrityFailure, match="authentication"):
        cipher.decrypt(chunked, PASSWORD)


def test_chunk_size_must_be_positive() -> None:
    with pytest.raises(ValueError, match="positive"):
        ChunkCipher(chunk_size=0)
