"""
Packet channel handler.

After accepting a connection the server sends a CHALLENGE. The client proves
it holds a delivery session token by answering with an HMAC over the
challenge, its HWID and a timestamp. Once authenticated it may send
heartbeats, request the script as a binary stream, or file security reports.
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from starlette.websockets import WebSocketDisconnect

from shadowgate.common.crypto import CryptoUtils
from shadowgate.server.binary_stream import BinaryStream
from shadowgate.server.delivery.payload import apply_watermark
from shadowgate.server.packets import (
    MessageType,
    build_packet,
    generate_challenge,
    parse_packet,
    verify_challenge_response,
)
from shadowgate.server.request_meta import extract_meta

if TYPE_CHECKING:
    from fastapi import WebSocket

    from shadowgate.common.config import Config
    from shadowgate.common.models import DeliverySession, RequestMeta
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.packets import ConnectionLimiter, Packet
    from shadowgate.server.persistence import DataPersistence
    from shadowgate.server.security_engine import SecurityEngine

POLICY_VIOLATION = 1008


class SocketHandler:
    """Runs one packet-channel connection from challenge to close."""

    def __init__(  # noqa: PLR0913
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        engine: SecurityEngine,
        limiter: ConnectionLimiter,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.engine = engine
        self.limiter = limiter
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    @staticmethod
    async def _send(websocket: WebSocket, message_type: MessageType, body: Any) -> None:
        payload = body if isinstance(body, bytes) else json.dumps(body).encode()
        await websocket.send_bytes(build_packet(message_type, payload))

    async def _kick(self, websocket: WebSocket, reason: str) -> None:
        await self._send(websocket, MessageType.KICK, {"reason": reason})
        await websocket.close(code=POLICY_VIOLATION)

    async def handle_connection(self, websocket: WebSocket, script_id: str) -> None:
        meta = extract_meta(websocket.headers, self.config.EXECUTOR_SIGNATURE)
        identifier = f"{meta.ip}:{script_id}"
        if self.limiter.is_duplicate_connection(identifier):
            self.logger.warning("Duplicate connection from %s", identifier)
            await websocket.close(code=POLICY_VIOLATION)
            return
        blocked, _ = self.guard.is_blacklisted(meta.ip)
        if blocked:
            await websocket.close(code=POLICY_VIOLATION)
            return

        await websocket.accept()
        challenge = generate_challenge()
        await self._send(
            websocket,
            MessageType.CHALLENGE,
            {"challenge": challenge, "timestamp": int(self.clock())},
        )

        session: DeliverySession | None = None
        try:
            while True:
                data = await websocket.receive_bytes()
                if not self.limiter.allow_message(identifier):
                    self.logger.warning("Packet rate limit exceeded for %s", identifier)
                    await self._kick(websocket, "rate_limited")
                    return
                packet = parse_packet(data)
                if packet is None:
                    self.logger.debug("Dropped malformed packet from %s", identifier)
                    continue
                if session is None:
                    session = await self._authenticate(
                        websocket, packet, challenge, script_id
                    )
                    if session is None:
                        return
                    continue
                if not await self._dispatch(websocket, packet, session, meta):
                    return
        except WebSocketDisconnect:
            self.logger.debug("Connection %s closed", identifier)

    async def _authenticate(
        self, websocket: WebSocket, packet: Packet, challenge: str, script_id: str
    ) -> DeliverySession | None:
        session = None
        if packet.type == MessageType.CHALLENGE_RESPONSE:
            session = self._verify_response(packet.payload, challenge, script_id)
        if session is None:
            await self._send(websocket, MessageType.AUTH_FAIL, {"error": "Unauthorized"})
            await websocket.close(code=POLICY_VIOLATION)
            return None
        await self._send(
            websocket,
            MessageType.AUTH_SUCCESS,
            {"heartbeat_interval": self.config.HEARTBEAT_INTERVAL_MS},
        )
        return session

    def _verify_response(
        self, payload: bytes, challenge: str, script_id: str
    ) -> DeliverySession | None:
        try:
            body = json.loads(payload)
            token = str(body["session_token"])
            hwid = str(body["hwid"])
            timestamp = int(body["timestamp"])
            response = str(body["response"])
        except (ValueError, KeyError, TypeError):
            return None
        session = self.persistence.get_delivery_session(token)
        if session is None or session.status != "active" or session.script_id != script_id:
            return None
        if session.hwid_hash and session.hwid_hash != CryptoUtils.hash_identifier(
            hwid, self.config.STATIC_SALT
        ):
            return None
        if not verify_challenge_response(
            challenge,
            response,
            token,
            hwid,
            timestamp,
            max_age=self.config.CHALLENGE_MAX_AGE,
            now=self.clock(),
        ):
            self.logger.warning("Challenge response rejected for key %s", session.key_id)
            return None
        return session

    async def _dispatch(
        self,
        websocket: WebSocket,
        packet: Packet,
        session: DeliverySession,
        meta: RequestMeta,
    ) -> bool:
        """Handle one authenticated packet. False once the connection is closed."""
        if packet.type == MessageType.HEARTBEAT:
            return await self._heartbeat(websocket, session, meta)
        if packet.type == MessageType.REQUEST_SCRIPT:
            await self._stream_script(websocket, session)
            return True
        if packet.type == MessageType.SECURITY_REPORT:
            return await self._security_report(websocket, packet.payload, session, meta)
        self.logger.debug("Ignored packet type %s", packet.type)
        return True

    async def _heartbeat(
        self, websocket: WebSocket, session: DeliverySession, meta: RequestMeta
    ) -> bool:
        current = self.persistence.get_delivery_session(session.session_token)
        blocked, _ = self.guard.is_blacklisted(meta.ip, session.hwid_hash)
        if blocked:
            await self._kick(websocket, "banned")
            return False
        if current is None or current.status != "active":
            await self._kick(websocket, current.status if current else "session_expired")
            return False
        current.last_heartbeat = int(self.clock())
        self.persistence.save_delivery_session(current, self.config.DELIVERY_SESSION_TTL)
        await self._send(websocket, MessageType.PONG, {"timestamp": current.last_heartbeat})
        return True

    async def _stream_script(self, websocket: WebSocket, session: DeliverySession) -> None:
        script = self.persistence.get_script(session.script_id)
        if script is None:
            await self._send(websocket, MessageType.AUTH_FAIL, {"error": "Script not found"})
            return
        content = apply_watermark(
            script.content, session.key_id, int(self.clock() * 1000)
        ).encode()
        salt = CryptoUtils.generate_salt(16)
        stream = BinaryStream.build(
            content, session.session_token, salt, self.config.CHUNK_SIZE
        )
        size = self.config.CHUNK_SIZE
        for start in range(0, len(stream), size):
            await self._send(websocket, MessageType.SCRIPT_CHUNK, stream[start : start + size])
        await self._send(
            websocket,
            MessageType.SCRIPT_END,
            {"checksum": BinaryStream.checksum(content), "salt": salt},
        )

    async def _security_report(
        self,
        websocket: WebSocket,
        payload: bytes,
        session: DeliverySession,
        meta: RequestMeta,
    ) -> bool:
        try:
            body = json.loads(payload)
        except ValueError:
            body = {}
        threats = [str(t) for t in body.get("threats", [])] if isinstance(body, dict) else []
        key = self.persistence.get_key_by_id(session.key_id)
        decision = self.engine.analyze(
            meta,
            key=key,
            script_id=session.script_id,
            hwid_hash=session.hwid_hash,
            reported_threats=threats,
            reported_executor=body.get("executor") if isinstance(body, dict) else None,
        )
        if decision.should_ban or decision.action == "already_banned":
            session.status = "banned"
            self.persistence.save_delivery_session(
                session, self.config.DELIVERY_SESSION_TTL
            )
            await self._kick(websocket, "security ban")
            return False
        if decision.action == "warning":
            await self._send(
                websocket,
                MessageType.WARNING,
                {"score": decision.score, "reasons": decision.reasons},
            )
        return True
