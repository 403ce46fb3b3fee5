"""
Server-side threat decisions.

Scores come from signals the server can observe itself: request volume per
IP and the number of distinct IPs using a key over the analysis window.
Client-reported threats only add weight when the server-side volume already
looks suspicious.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable

from shadowgate.common.exceptions import UpstreamUnavailable
from shadowgate.common.models import LicenseKey, SecurityDecision

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.models import RequestMeta
    from shadowgate.server.guard import SecurityGuard
    from shadowgate.server.persistence import DataPersistence

PERM_BAN_SCORE = 70
TEMP_BAN_SCORE = 50
WARNING_SCORE = 30

_LEVEL_ORDER = ("none", "low", "medium", "high", "critical")


def _raise_level(current: str, new: str) -> str:
    return new if _LEVEL_ORDER.index(new) > _LEVEL_ORDER.index(current) else current


class SecurityEngine:
    """Turns verified request metadata plus client telemetry into an action."""

    def __init__(
        self,
        config: Config,
        persistence: DataPersistence,
        guard: SecurityGuard,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.persistence = persistence
        self.guard = guard
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def score(
        self,
        request_count: int,
        unique_ips: int,
        reported_threats: list[str],
        executor_mismatch: bool = False,  # noqa: FBT001, FBT002
    ) -> tuple[int, str, list[str]]:
        """Anomaly score, threat level and the reasons that contributed."""
        score = 0
        level = "none"
        reasons: list[str] = []

        if request_count > 100:  # noqa: PLR2004
            score += 50
            level = "high"
            reasons.append(f"requests_1h={request_count}")
        elif request_count > 50:  # noqa: PLR2004
            score += 25
            level = "medium"
            reasons.append(f"requests_1h={request_count}")
        elif request_count > 20:  # noqa: PLR2004
            score += 10
            reasons.append(f"requests_1h={request_count}")

        if unique_ips > 5:  # noqa: PLR2004
            score += 30
            level = _raise_level(level, "medium")
            reasons.append(f"unique_ips_1h={unique_ips}")
        elif unique_ips > 3:  # noqa: PLR2004
            score += 15
            reasons.append(f"unique_ips_1h={unique_ips}")

        # Reports count only when corroborated by server-side volume
        if reported_threats and request_count > 10:  # noqa: PLR2004
            score += 20
            level = "high"
            reasons.append("corroborated_client_report")

        if executor_mismatch:
            score += 10
            reasons.append("executor_mismatch")

        return score, level, reasons

    def analyze(  # noqa: PLR0913
        self,
        meta: RequestMeta,
        key: LicenseKey | None = None,
        script_id: str | None = None,
        hwid_hash: str | None = None,
        reported_threats: list[str] | None = None,
        reported_executor: str | None = None,
        max_warnings: int | None = None,
    ) -> SecurityDecision:
        """Score and act on one report. Store failures fail open."""
        threats = reported_threats or []
        try:
            since = self.clock() - self.config.ANALYSIS_WINDOW
            request_count = self.persistence.count_reports_for_ip(meta.ip, since)
            unique_ips = (
                self.persistence.distinct_ips_for_key(key.key_id, since) if key else 1
            )

            blocked, _ = self.guard.is_blacklisted(meta.ip)
            if blocked:
                return SecurityDecision(action="already_banned", threat_level="blocked")

            self.persistence.record_report(
                meta.ip,
                key.key_id if key else None,
                script_id,
                threats,
                ttl=self.config.ANALYSIS_WINDOW,
            )
            mismatch = self._executor_mismatch(meta, reported_executor)
            score, level, reasons = self.score(
                request_count, unique_ips, threats, mismatch
            )
            decision = self._decide(score, level, reasons)
            self._apply(decision, meta, key, hwid_hash, max_warnings)
        except UpstreamUnavailable:
            self.logger.exception("Security analysis unavailable for %s", meta.ip)
            return SecurityDecision(reasons=["analysis_unavailable"])

        if decision.action != "none":
            self.logger.info(
                "Security decision for %s: %s (score=%s, %s)",
                meta.ip,
                decision.action,
                decision.score,
                ", ".join(decision.reasons),
            )
        return decision

    @staticmethod
    def _executor_mismatch(meta: RequestMeta, reported_executor: str | None) -> bool:
        """Claimed executor disagrees with the one seen in the headers."""
        if not reported_executor or meta.executor in (None, "ShadowAuth"):
            return False
        return reported_executor.lower() != meta.executor.lower()

    @staticmethod
    def _decide(score: int, level: str, reasons: list[str]) -> SecurityDecision:
        if score >= PERM_BAN_SCORE:
            return SecurityDecision(
                action="perm_ban", score=score, threat_level="critical", reasons=reasons
            )
        if score >= TEMP_BAN_SCORE:
            return SecurityDecision(
                action="temp_ban", score=score, threat_level="high", reasons=reasons
            )
        if score >= WARNING_SCORE:
            return SecurityDecision(
                action="warning", score=score, threat_level="medium", reasons=reasons
            )
        return SecurityDecision(score=score, threat_level=level, reasons=reasons)

    def _apply(
        self,
        decision: SecurityDecision,
        meta: RequestMeta,
        key: LicenseKey | None,
        hwid_hash: str | None,
        max_warnings: int | None,
    ) -> None:
        if decision.should_ban:
            ttl = (
                self.config.PERM_BAN_TTL
                if decision.action == "perm_ban"
                else self.config.TEMP_BAN_TTL
            )
            reason = f"server_analysis:score={decision.score}"
            self.guard.add_to_blacklist(meta.ip, reason, ttl)
            if hwid_hash:
                self.guard.add_to_blacklist(f"hwid:{hwid_hash}", reason, ttl)
            self.persistence.log_event(
                "server_ban",
                "critical",
                ip=meta.ip,
                key_id=key.key_id if key else None,
                action=decision.action,
                score=decision.score,
            )
        elif decision.action == "warning" and key is not None:
            self.register_warning(key, max_warnings or self.config.DEFAULT_MAX_WARNINGS)

    def register_warning(
        self, key: LicenseKey, max_warnings: int, detail: str | None = None
    ) -> LicenseKey:
        """Bump the key's warning counter and ban it once it reaches the limit."""
        now = int(self.clock())

        def bump(record: LicenseKey) -> None:
            record.warning_count += 1
            if record.warning_count >= max_warnings and not record.is_banned:
                record.is_banned = True
                record.ban_reason = (
                    f"Exceeded max warnings ({record.warning_count}/{max_warnings})"
                )
                record.ban_expire = None

        updated = self.persistence.update_key(key, bump)
        self.persistence.log_event(
            "warning",
            "warning",
            key_id=key.key_id,
            warning_count=updated.warning_count,
            detail=detail,
            at=now,
        )
        if updated.is_banned and not key.is_banned:
            self.logger.warning(
                "Key %s auto-banned: %s", key.key_id, updated.ban_reason
            )
        return updated
