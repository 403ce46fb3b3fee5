"""
Pydantic models for request/response validation and stored records.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["active", "kicked", "banned", "disconnected"]
DecisionAction = Literal["none", "warning", "temp_ban", "perm_ban", "already_banned"]
DeliveryMode = Literal["binary", "xor", "chunked"]


class ScriptFlags(BaseModel):
    """Per-script protection toggles sent to clients at the flags step."""

    secure_core: bool = True
    anti_tamper: bool = True
    anti_debug: bool = True
    hwid_lock: bool = True
    spy_warnings: bool = True
    max_warnings: int = Field(default=3, gt=0)


class ScriptRecord(BaseModel):
    script_id: str
    name: str
    content: str
    flags: ScriptFlags = Field(default_factory=ScriptFlags)
    webhook_url: str | None = None
    response_secret: str | None = None


class LicenseKey(BaseModel):
    key_id: str
    key_value: str
    script_id: str
    hwid: str | None = None
    hwid_reset_count: int = 0
    expires_at: int | None = None
    key_days: int | None = None
    activated_at: int | None = None
    is_banned: bool = False
    ban_reason: str | None = None
    ban_expire: int | None = None
    warning_count: int = 0
    execution_count: int = 0
    used_at: int | None = None
    last_reset: int | None = None
    discord_id: str | None = None
    created_at: int = 0


class BlacklistEntry(BaseModel):
    identifier: str
    reason: str
    banned_at: int
    expires_at: int | None = None


class RateLimitState(BaseModel):
    identifier: str
    count: int
    window_start: float
    blocked_until: float | None = None


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: float
    blocked: bool = False


class TracepathSession(BaseModel):
    session_id: str
    script_id: str
    hwid_hash: str | None = None
    ip: str
    current_step: int = 0
    step_times: dict[str, int] = Field(default_factory=dict)
    is_valid: bool = True
    expires_at: int
    completed_at: int | None = None


class RotatingToken(BaseModel):
    token: str
    script_id: str
    hwid_hash: str | None = None
    ip: str
    step: int = 0
    max_step: int = 10
    is_valid: bool = True
    expires_at: float
    key_id: str | None = None


class DeliverySession(BaseModel):
    session_token: str
    key_id: str
    script_id: str
    hwid_hash: str | None = None
    ip: str
    executor: str | None = None
    status: SessionStatus = "active"
    last_heartbeat: int
    created_at: int
    warnings: int = 0


class EncryptedChunk(BaseModel):
    index: int
    iv: str
    data: str
    tag: str
    size: int


class ChunkedPayload(BaseModel):
    chunks: list[EncryptedChunk]
    total_chunks: int
    signature: str
    salt: str
    timestamp: int


class RequestMeta(BaseModel):
    """Metadata taken from trusted transport headers, never from the body."""

    ip: str
    user_agent: str = ""
    fingerprint: str = ""
    executor: str | None = None


class SecurityDecision(BaseModel):
    action: DecisionAction = "none"
    score: int = 0
    threat_level: str = "none"
    reasons: list[str] = Field(default_factory=list)

    @property
    def should_ban(self) -> bool:
        return self.action in ("temp_ban", "perm_ban")


class HandshakeRequest(BaseModel):
    key: str = Field(min_length=1)
    script_id: str = Field(min_length=1)
    hwid: str | None = None


class ValidateRequest(BaseModel):
    key: str = Field(min_length=1)
    script_id: str = Field(min_length=1)
    hwid: str | None = None
    session_id: str | None = None
    rotating_token: str | None = None
    handshake_token: str | None = None
    nonce: str | None = None
    request_hash: str | None = None
    session_key: str | None = None
    delivery_mode: DeliveryMode | None = None
    executor: str | None = None
    username: str | None = None
    detected_threats: list[str] = Field(default_factory=list)


class HeartbeatRequest(BaseModel):
    action: Literal["register", "ping", "validate", "kill"] = "ping"
    hwid: str | None = None
    detected_threats: list[str] = Field(default_factory=list)
    executor: str | None = None


class AdminRequest(BaseModel):
    password: str


class CreateKeyRequest(AdminRequest):
    script_id: str
    key_value: str | None = None
    expires_at: int | None = None
    key_days: int | None = Field(default=None, gt=0)
    discord_id: str | None = None


class KeyActionRequest(AdminRequest):
    script_id: str
    key: str
    force: bool = False
    reason: str | None = None
    duration: int | None = Field(default=None, gt=0)


class SessionActionRequest(AdminRequest):
    session_token: str


class BlacklistRequest(AdminRequest):
    identifier: str
    reason: str | None = None
    ttl: int | None = Field(default=None, gt=0)
    permanent: bool = False
