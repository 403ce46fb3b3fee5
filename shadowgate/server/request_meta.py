"""
Verified request metadata.

Client identity for security decisions comes only from transport headers set
by the fronting proxy, never from the request body.
"""

from __future__ import annotations

import ipaddress
import re
from typing import Mapping

from shadowgate.common.crypto import CryptoUtils
from shadowgate.common.exceptions import Unauthorized
from shadowgate.common.models import RequestMeta

SIGNATURE_HEADER = "x-shadow-sig"

EXECUTOR_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), name)
    for pattern, name in (
        (r"synapse", "Synapse"),
        (r"krnl", "KRNL"),
        (r"script-?ware", "ScriptWare"),
        (r"fluxus", "Fluxus"),
        (r"electron", "Electron"),
        (r"oxygen", "Oxygen"),
        (r"sentinel", "Sentinel"),
        (r"sirius", "Sirius"),
        (r"valyse", "Valyse"),
        (r"celery", "Celery"),
        (r"arceus", "Arceus"),
        (r"roblox", "Roblox"),
        (r"comet", "Comet"),
        (r"trigon", "Trigon"),
        (r"delta", "Delta"),
        (r"hydrogen", "Hydrogen"),
        (r"evon", "Evon"),
        (r"vegax", "VegaX"),
        (r"jjsploit", "JJSploit"),
        (r"nihon", "Nihon"),
        (r"zorara", "Zorara"),
        (r"macsploit", "Macsploit"),
        (r"sirhurt", "SirHurt"),
        (r"temple", "Temple"),
        (r"codex", "Codex"),
        (r"swift", "Swift"),
        (r"awp", "AWP"),
        (r"krampus", "Krampus"),
        (r"solara", "Solara"),
        (r"wave", "Wave"),
        (r"volt", "Volt"),
    )
)

BROWSER_PATTERN = re.compile(r"mozilla|chrome|safari|firefox|edge|opera", re.IGNORECASE)


def client_ip(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for", "")
    return (
        headers.get("cf-connecting-ip")
        or headers.get("x-real-ip")
        or forwarded.split(",")[0].strip()
        or "unknown"
    )


def detect_executor(headers: Mapping[str, str], loader_signature: str) -> str | None:
    """Name of the executor that sent the request, or None."""
    if headers.get(SIGNATURE_HEADER) == loader_signature:
        return "ShadowAuth"
    user_agent = headers.get("user-agent", "")
    for pattern, name in EXECUTOR_PATTERNS:
        if pattern.search(user_agent):
            return name
    return None


def looks_like_browser(headers: Mapping[str, str]) -> bool:
    return bool(BROWSER_PATTERN.search(headers.get("user-agent", "")))


def is_private_ip(ip: str) -> bool:
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return address.is_private or address.is_loopback or address.is_reserved


def extract_meta(headers: Mapping[str, str], loader_signature: str) -> RequestMeta:
    ip = client_ip(headers)
    user_agent = headers.get("user-agent", "")
    fingerprint_source = "|".join(
        [
            user_agent[:100],
            headers.get("accept-language", ""),
            headers.get("accept-encoding", ""),
            ip[:8],
        ]
    )
    return RequestMeta(
        ip=ip,
        user_agent=user_agent,
        fingerprint=CryptoUtils.sha256_hex(fingerprint_source)[:16],
        executor=detect_executor(headers, loader_signature),
    )


def require_executor(meta: RequestMeta) -> str:
    if meta.executor is None:
        raise Unauthorized
    return meta.executor
