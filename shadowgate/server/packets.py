"""
Packet framing and challenge-response helpers for the socket channel.

A packet is ``[4-byte big-endian length][1-byte type][payload]``.
"""

from __future__ import annotations

import secrets
import struct
import threading
import time
from enum import IntEnum
from typing import Callable, NamedTuple

from shadowgate.common.crypto import CryptoUtils

PACKET_HEADER = struct.Struct(">IB")


class MessageType(IntEnum):
    HANDSHAKE = 0x01
    CHALLENGE_RESPONSE = 0x02
    REQUEST_SCRIPT = 0x03
    HEARTBEAT = 0x04
    SECURITY_REPORT = 0x05
    CHALLENGE = 0x10
    AUTH_SUCCESS = 0x11
    AUTH_FAIL = 0x12
    SCRIPT_CHUNK = 0x20
    SCRIPT_END = 0x21
    KICK = 0x30
    WARNING = 0x31
    PONG = 0x40


class Packet(NamedTuple):
    type: int
    payload: bytes


def build_packet(message_type: int, payload: bytes = b"") -> bytes:
    if not 0 <= message_type <= 0xFF:
        msg = "message type must fit in one byte"
        raise ValueError(msg)
    return PACKET_HEADER.pack(len(payload), message_type) + payload


def parse_packet(data: bytes) -> Packet | None:
    """Decode one packet; None when data is short or truncated."""
    if len(data) < PACKET_HEADER.size:
        return None
    length, message_type = PACKET_HEADER.unpack_from(data, 0)
    end = PACKET_HEADER.size + length
    if len(data) < end:
        return None
    return Packet(message_type, data[PACKET_HEADER.size : end])


def generate_challenge() -> str:
    return secrets.token_hex(32)


def challenge_response(challenge: str, hmac_key: str, hwid: str, timestamp: int) -> str:
    return CryptoUtils.hmac_sign(f"{challenge}:{hwid}:{timestamp}", hmac_key)


def verify_challenge_response(  # noqa: PLR0913
    challenge: str,
    response: str,
    hmac_key: str,
    hwid: str,
    timestamp: int,
    max_age: int = 30,
    now: float | None = None,
) -> bool:
    current = time.time() if now is None else now
    if abs(current - timestamp) > max_age:
        return False
    expected = challenge_response(challenge, hmac_key, hwid, timestamp)
    return CryptoUtils.timing_safe_equal(expected, response)


class ConnectionLimiter:
    """Per-process message rate limit and duplicate-connection cooldown."""

    SWEEP_THRESHOLD = 10000

    def __init__(
        self,
        max_messages: int = 30,
        window: float = 10,
        duplicate_cooldown: float = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_messages = max_messages
        self.window = window
        self.duplicate_cooldown = duplicate_cooldown
        self.clock = clock
        self._messages: dict[str, tuple[int, float]] = {}
        self._connections: dict[str, float] = {}
        self._lock = threading.Lock()

    def allow_message(self, identifier: str) -> bool:
        now = self.clock()
        with self._lock:
            if len(self._messages) > self.SWEEP_THRESHOLD:
                for key in [
                    k for k, (_, start) in self._messages.items()
                    if now - start > self.window * 2
                ]:
                    del self._messages[key]
            count, start = self._messages.get(identifier, (0, now))
            if count == 0 or now - start > self.window:
                self._messages[identifier] = (1, now)
                return True
            if count >= self.max_messages:
                return False
            self._messages[identifier] = (count + 1, start)
            return True

    def is_duplicate_connection(self, identifier: str) -> bool:
        """True if identifier connected within the cooldown, else record it."""
        now = self.clock()
        with self._lock:
            if len(self._connections) > self.SWEEP_THRESHOLD // 2:
                for key in [
                    k for k, ts in self._connections.items()
                    if now - ts > self.duplicate_cooldown * 2
                ]:
                    del self._connections[key]
            last = self._connections.get(identifier)
            if last is not None and now - last < self.duplicate_cooldown:
                return True
            self._connections[identifier] = now
            return False
