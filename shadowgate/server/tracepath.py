"""
Tracepath state machine.

A handshake session must walk ``version -> info -> endpoints -> flags ->
validate`` one step at a time. Transitions are applied through the store's
atomic update so a failing check never mutates the session. Records outlive
their expiry in the store so a late call reports "Session expired" rather
than an unknown session.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable

from shadowgate.common.exceptions import Expired, InvalidCredential, SequenceViolation
from shadowgate.common.models import TracepathSession

if TYPE_CHECKING:
    from shadowgate.common.config import Config
    from shadowgate.common.interfaces import IStore

TRACEPATH_SESSIONS = "tracepath_sessions"


class TracepathMachine:
    """Creates tracepath sessions and advances them in strict order."""

    def __init__(
        self, config: Config, store: IStore, clock: Callable[[], float] = time.time
    ) -> None:
        self.config = config
        self.store = store
        self.clock = clock
        self.steps: tuple[str, ...] = config.TRACEPATH_STEPS
        self.logger = logging.getLogger(__name__)

    def step_index(self, step: str) -> int:
        """1-based position of step in the tracepath."""
        try:
            return self.steps.index(step) + 1
        except ValueError as err:
            msg = f"Unknown tracepath step: {step}"
            raise ValueError(msg) from err

    def next_step(self, step: str) -> str | None:
        index = self.step_index(step)
        return self.steps[index] if index < len(self.steps) else None

    def start(
        self,
        script_id: str,
        ip: str,
        hwid_hash: str | None = None,
        session_id: str | None = None,
    ) -> TracepathSession:
        """Create a session at step 0 (init)."""
        now = int(self.clock())
        session = TracepathSession(
            session_id=session_id or str(uuid.uuid4()),
            script_id=script_id,
            hwid_hash=hwid_hash,
            ip=ip,
            current_step=0,
            expires_at=now + self.config.TRACEPATH_SESSION_TTL,
        )
        self.store.put(
            TRACEPATH_SESSIONS,
            session.session_id,
            session.model_dump(),
            self.config.TRACEPATH_SESSION_TTL * 2,
        )
        return session

    def get(self, session_id: str) -> TracepathSession | None:
        data = self.store.get(TRACEPATH_SESSIONS, session_id)
        if data is None:
            return None
        return TracepathSession.model_validate(data)

    def advance(
        self,
        session_id: str,
        step: str,
        **updates: Any,
    ) -> TracepathSession:
        """Move session to step. Raises if step is not the next one."""
        target = self.step_index(step)
        now = int(self.clock())

        def apply(current: dict[str, Any] | None) -> dict[str, Any]:
            if current is None:
                msg = "Invalid session"
                raise InvalidCredential(msg)
            session = TracepathSession.model_validate(current)
            if not session.is_valid:
                msg = "Invalid session"
                raise InvalidCredential(msg)
            if session.current_step != target - 1:
                raise SequenceViolation
            if session.expires_at < now:
                msg = "Session expired"
                raise Expired(msg)
            session.current_step = target
            session.step_times[step] = now
            for name, value in updates.items():
                setattr(session, name, value)
            if target == len(self.steps):
                session.completed_at = now
                session.is_valid = False
            return session.model_dump()

        try:
            data = self.store.update(TRACEPATH_SESSIONS, session_id, apply)
        except InvalidCredential:
            self.logger.warning("Unknown tracepath session %s at %s", session_id, step)
            raise
        except (SequenceViolation, Expired) as e:
            self.logger.warning(
                "Tracepath rejected session %s at %s: %s", session_id, step, e
            )
            raise
        return TracepathSession.model_validate(data)
