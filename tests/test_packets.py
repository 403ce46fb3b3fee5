import pytest

from shadowgate.server.packets import (
    ConnectionLimiter,
    MessageType,
    Packet,
    build_packet,
    challenge_response,
    generate_challenge,
    parse_packet,
    verify_challenge_response,
)
from tests.conftest import FakeClock


@pytest.mark.parametrize("size", [0, 1, 255, 4096, 65536, 70000])
def test_packet_round_trip(size: int) -> None:
    payload = bytes(i % 256 for i in range(size))
    packet = build_packet(MessageType.SCRIPT_CHUNK, payload)
    assert len(packet) == size + 5
    assert parse_packet(packet) == Packet(MessageType.SCRIPT_CHUNK, payload)


def test_parse_rejects_short_and_truncated() -> None:
    assert parse_packet(b"") is None
    assert parse_packet(b"\x00\x00\x00") is None
    packet = build_packet(MessageType.HEARTBEAT, b"abcdef")
    assert parse_packet(packet[:-1]) is None


def test_parse_ignores_trailing_bytes() -> None:
    packet = build_packet(MessageType.PONG, b"ok") + b"extra"
    assert parse_packet(packet) == Packet(MessageType.PONG, b"ok")


def test_message_type_must_fit_in_a_byte() -> None:
    with pytest.raises(ValueError, match="one byte"):
        build_packet(256)


def test_challenge_response_verification() -> None:
    challenge = generate_challenge()
    assert len(challenge) == 64  # noqa: PLR2004
    response = challenge_response(challenge, "session-token", "HWID-A", 1000)
    assert verify_challenge_response(
        challenge, response, "session-token", "HWID-A", 1000, now=1010
    )
    assert not verify_challenge_response(
        challenge, response, "session-token", "HWID-B", 1000, now=1010
    )
    assert not verify_challenge_response(
        challenge, response, "other-token", "HWID-A", 1000, now=1010
    )
    assert not verify_challenge_response(
        challenge, response, "session-token", "HWID-A", 1000, now=1031
    )


def test_connection_limiter_message_rate(clock: FakeClock) -> None:
    limiter = ConnectionLimiter(max_messages=3, window=10, clock=clock)
    assert [limiter.allow_message("c") for _ in range(4)] == [True, True, True, False]
    clock.advance(11)
    assert limiter.allow_message("c")


def test_connection_limiter_duplicate_cooldown(clock: FakeClock) -> None:
    limiter = ConnectionLimiter(duplicate_cooldown=5, clock=clock)
    assert not limiter.is_duplicate_connection("1.2.3.4:s1")
    clock.advance(3)
    assert limiter.is_duplicate_connection("1.2.3.4:s1")
    assert not limiter.is_duplicate_connection("1.2.3.4:s2")
    clock.advance(2)
    assert not limiter.is_duplicate_connection("1.2.3.4:s1")
