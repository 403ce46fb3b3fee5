"""
Configuration settings for the protected delivery engine.
"""

from __future__ import annotations

import os
from pathlib import Path

from shadowgate.common.logging_utils import parse_log_level


class Config:
    """Central configuration class for all system settings."""

    def __init__(self) -> None:
        # Secrets
        self.HANDSHAKE_SECRET: str = os.getenv(
            "SHADOWGATE_HANDSHAKE_SECRET", "change-me-handshake-secret"
        )
        self.STATIC_SALT: str = os.getenv("SHADOWGATE_STATIC_SALT", "shadowauth_v7")
        self.ADMIN_PASSWORD: str | None = os.getenv("SHADOWGATE_ADMIN_PASSWORD")

        # Handshake and tracepath
        self.HANDSHAKE_TOKEN_TTL: int = 30
        self.TRACEPATH_SESSION_TTL: int = 120  # 2 minute handshake window
        self.TRACEPATH_STEPS: tuple[str, ...] = (
            "version",
            "info",
            "endpoints",
            "flags",
            "validate",
        )
        self.API_VERSION: str = "v3"
        self.PROTOCOL_VERSION: str = "3.0.0"

        # Rotating and session tokens
        self.SESSION_TOKEN_TTL: int = 30
        self.ROTATING_TOKEN_TTL: int = 15
        self.ROTATING_TOKEN_MAX_STEP: int = 10
        self.FLAGS_TOKEN_MAX_STEP: int = 5
        self.SESSION_TOKEN_LENGTH: int = 64
        self.SCRIPT_TOKEN_LENGTH: int = 48

        # Replay and rate limits
        self.NONCE_LENGTH: int = 16
        self.NONCE_TTL: int = 300
        self.REQUEST_HASH_TTL: int = 60
        self.CLEANUP_PROBABILITY: float = 0.01
        self.CACHE_SWEEP_THRESHOLD: int = 1000
        self.HANDSHAKE_RATE_LIMIT: tuple[int, int] = (30, 60)
        self.HEARTBEAT_RATE_LIMIT: tuple[int, int] = (120, 60)
        self.LOADER_RATE_LIMIT: tuple[int, int] = (30, 30)
        self.BLACKLIST_DEFAULT_TTL: int = 86400
        self.BLACKLIST_DEFAULT_REASON: str = "security_violation"

        # Key policy
        self.MAX_HWID_RESETS: int = 2
        self.HWID_RESET_COOLDOWN: int = 24 * 3600

        # Security decision engine
        self.ANALYSIS_WINDOW: int = 3600
        self.TEMP_BAN_TTL: int = 6 * 3600
        self.PERM_BAN_TTL: int | None = None
        self.DEFAULT_MAX_WARNINGS: int = 3

        # Heartbeat
        self.HEARTBEAT_INTERVAL_MS: int = 10000
        self.DELIVERY_SESSION_TTL: int = 24 * 3600

        # Delivery
        self.CHUNK_SIZE: int = 4096
        self.PBKDF2_ITERATIONS: int = 100_000
        self.LAYER_CACHE_TTL: int = 300
        self.FILLER_CACHE_TTL: int = 600
        self.FILLER_SIZE: int = 100 * 1024
        self.EXECUTOR_SIGNATURE: str = "ShadowAuth-Loader-v2"

        # Packet protocol
        self.CHALLENGE_MAX_AGE: int = 30
        self.PACKET_RATE_LIMIT: tuple[int, int] = (30, 10)
        self.DUPLICATE_CONNECTION_COOLDOWN: int = 5

        # Side tasks
        self.SIDE_TASK_TIMEOUT: float = 3.0
        self.SIDE_TASK_WORKERS: int = 4
        self.GEOLOCATION_URL: str = "http://ip-api.com/json/{ip}?fields=countryCode"
        self.GEOLOCATION_ENABLED: bool = (
            os.getenv("SHADOWGATE_GEOLOCATION", "1") != "0"
        )

        # Server settings
        self.SERVER_HOST: str = os.getenv("SHADOWGATE_SERVER_HOST", "127.0.0.1")
        self.SERVER_PORT: int = int(os.getenv("SHADOWGATE_SERVER_PORT", "8000"))
        self.BASE_URL: str = os.getenv(
            "SHADOWGATE_BASE_URL", f"http://{self.SERVER_HOST}:{self.SERVER_PORT}"
        )

        # File paths
        self.BASE_DIR: Path = Path(__file__).parent.parent
        self.DATA_DIR: Path = Path(
            os.getenv("SHADOWGATE_DATA_DIR", str(self.BASE_DIR / "data"))
        )

        # Logging
        self.LOG_LEVEL: int = parse_log_level(os.getenv("SHADOWGATE_LOG_LEVEL"))
