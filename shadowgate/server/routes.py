"""
Routes for the delivery server.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from fastapi import FastAPI, Request, WebSocket  # noqa: TC002
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response

from shadowgate.common.exceptions import Banned, Expired, ValidationError
from shadowgate.common.models import (
    BlacklistRequest,
    CreateKeyRequest,
    HandshakeRequest,
    HeartbeatRequest,
    KeyActionRequest,
    SessionActionRequest,
    ValidateRequest,
)
from shadowgate.server.request_meta import extract_meta, looks_like_browser

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import RequestMeta

    from .services import ProtocolService

UNAUTHORIZED_PAGE = "<html><body><h1>401 Unauthorized</h1></body></html>"

logger = logging.getLogger(__name__)


class ProtocolRoutes:
    """Handles FastAPI routes for the delivery server."""

    def __init__(self, service: ProtocolService, config: Config):
        self.service = service
        self.config = config

    def setup_routes(self, app: FastAPI) -> None:
        """Setup API routes on the FastAPI app."""

        app.get("/health")(self.health)
        app.post("/auth/handshake")(self.handshake)
        app.get("/auth/version")(self.version)
        app.post("/auth/info")(self.info)
        app.post("/auth/endpoints")(self.endpoints)
        app.post("/auth/flags")(self.flags)
        app.post("/validate")(self.validate)
        app.post("/heartbeat")(self.heartbeat)
        app.get("/loader/{script_id}")(self.loader)
        app.websocket("/ws/{script_id}")(self.socket)
        if self.config.ADMIN_PASSWORD:
            app.post("/admin/keys")(self.create_key)
            app.post("/admin/keys/reset-hwid")(self.reset_hwid)
            app.post("/admin/keys/ban")(self.ban_key)
            app.post("/admin/keys/unban")(self.unban_key)
            app.post("/admin/sessions/kick")(self.kick_session)
            app.post("/admin/blacklist")(self.add_blacklist)
            app.post("/admin/blacklist/remove")(self.remove_blacklist)

    def _meta(self, request: Request) -> RequestMeta:
        return extract_meta(request.headers, self.config.EXECUTOR_SIGNATURE)

    @staticmethod
    def _error(request: Request, meta: RequestMeta, e: ValidationError) -> None:
        logger.warning(
            "%s %s rejected for %s: %s (%s)",
            request.method,
            request.url.path,
            meta.ip,
            e,
            e.status_code,
        )

    def _call(
        self, request: Request, func: Callable[[RequestMeta], dict[str, Any]]
    ) -> Any:
        """Run func, turning protocol errors into ``{success: false, error}``."""
        meta = self._meta(request)
        try:
            return func(meta)
        except ValidationError as e:
            self._error(request, meta, e)
            body: dict[str, Any] = {"success": False, "error": str(e)}
            if isinstance(e, Banned):
                body["banned"] = True
            return JSONResponse(body, status_code=e.status_code)

    async def health(self) -> dict[str, Any]:
        """Handle /health endpoint."""
        return self.service.health()

    def handshake(self, req: HandshakeRequest, request: Request) -> Any:
        """Handle /auth/handshake endpoint."""
        return self._call(request, lambda meta: self.service.handshake(req, meta))

    def version(self, request: Request, script_id: str | None = None) -> Any:
        """Handle /auth/version endpoint."""
        session_id = request.headers.get("x-session-id")
        return self._call(
            request, lambda meta: self.service.version(script_id, session_id, meta)
        )

    def info(self, request: Request) -> Any:
        session_id = request.headers.get("x-session-id")
        hwid = request.headers.get("x-hwid")
        return self._call(request, lambda meta: self.service.info(session_id, hwid, meta))

    def endpoints(self, request: Request) -> Any:
        session_id = request.headers.get("x-session-id")
        return self._call(request, lambda meta: self.service.endpoints(session_id, meta))

    def flags(self, request: Request) -> Any:
        session_id = request.headers.get("x-session-id")
        hwid = request.headers.get("x-hwid")
        return self._call(request, lambda meta: self.service.flags(session_id, hwid, meta))

    def validate(self, req: ValidateRequest, request: Request) -> Any:
        """Handle /validate endpoint; failures use ``{valid: false, message}``."""
        meta = self._meta(request)
        try:
            return self.service.validate(
                req, meta, request.headers.get("x-delivery-mode")
            )
        except ValidationError as e:
            self._error(request, meta, e)
            body: dict[str, Any] = {"valid": False, "message": str(e)}
            if isinstance(e, Banned):
                body.update(banned=True, reason=e.reason, ban_expire=e.expires_at)
            elif isinstance(e, Expired) and str(e) == "Expired":
                body["expired"] = True
            return JSONResponse(body, status_code=e.status_code)

    def heartbeat(self, req: HeartbeatRequest, request: Request) -> Any:
        """Handle /heartbeat endpoint."""
        token = request.headers.get("x-session-token")
        return self._call(request, lambda meta: self.service.heartbeat(req, token, meta))

    def loader(
        self,
        script_id: str,
        request: Request,
        layer: str | None = None,
        v: str | None = None,
        wrap: str | None = None,
    ) -> Response:
        """Handle /loader/{script_id}; responses are raw text."""
        meta = self._meta(request)
        try:
            result = self.service.loader(script_id, layer, v, wrap, meta)
        except ValidationError as e:
            self._error(request, meta, e)
            if e.status_code == 401 and looks_like_browser(request.headers):  # noqa: PLR2004
                return HTMLResponse(UNAUTHORIZED_PAGE, status_code=401)
            return PlainTextResponse(str(e), status_code=e.status_code)
        return PlainTextResponse(result.content, headers=result.headers)

    async def socket(self, websocket: WebSocket, script_id: str) -> None:
        await self.service.socket(websocket, script_id)

    # Admin

    def create_key(self, req: CreateKeyRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.create_key(req))

    def reset_hwid(self, req: KeyActionRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.reset_hwid(req))

    def ban_key(self, req: KeyActionRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.ban_key(req))

    def unban_key(self, req: KeyActionRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.unban_key(req))

    def kick_session(self, req: SessionActionRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.kick_session(req))

    def add_blacklist(self, req: BlacklistRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.add_blacklist(req))

    def remove_blacklist(self, req: BlacklistRequest, request: Request) -> Any:
        return self._call(request, lambda _meta: self.service.remove_blacklist(req))
