import pytest

from shadowgate.common.config import Config
from shadowgate.common.exceptions import Expired, InvalidCredential, SequenceViolation
from shadowgate.server.persistence import InMemoryStore
from shadowgate.server.tracepath import TracepathMachine
from tests.conftest import FakeClock

STEPS = ["version", "info", "endpoints", "flags", "validate"]


@pytest.fixture
def machine(config: Config, store: InMemoryStore, clock: FakeClock) -> TracepathMachine:
    return TracepathMachine(config, store, clock)


def test_full_walk_completes_and_invalidates(
    machine: TracepathMachine, clock: FakeClock
) -> None:
    session = machine.start("s1", "1.2.3.4")
    assert session.current_step == 0
    for index, step in enumerate(STEPS, start=1):
        clock.advance(1)
        session = machine.advance(session.session_id, step)
        assert session.current_step == index
        assert session.step_times[step] == int(clock())
    assert session.completed_at == int(clock())
    assert not session.is_valid
    with pytest.raises(InvalidCredential, match="Invalid session"):
        machine.advance(session.session_id, "validate")


@pytest.mark.parametrize("position", range(1, len(STEPS)))
def test_step_before_previous_fails(machine: TracepathMachine, position: int) -> None:
    session = machine.start("s1", "1.2.3.4")
    for step in STEPS[: position - 1]:
        machine.advance(session.session_id, step)
    with pytest.raises(SequenceViolation):
        machine.advance(session.session_id, STEPS[position])
    # A rejected call leaves the session where it was
    assert machine.get(session.session_id).current_step == position - 1  # type: ignore[union-attr]


def test_repeating_a_step_fails(machine: TracepathMachine) -> None:
    session = machine.start("s1", "1.2.3.4")
    machine.advance(session.session_id, "version")
    with pytest.raises(SequenceViolation) as exc:
        machine.advance(session.session_id, "version")
    assert str(exc.value) == "Invalid tracepath sequence"
    assert exc.value.status_code == 403  # noqa: PLR2004


def test_expired_session(machine: TracepathMachine, clock: FakeClock) -> None:
    session = machine.start("s1", "1.2.3.4")
    clock.advance(121)
    with pytest.raises(Expired, match="Session expired"):
        machine.advance(session.session_id, "version")


def test_unknown_session(machine: TracepathMachine) -> None:
    with pytest.raises(InvalidCredential, match="Invalid session"):
        machine.advance("missing", "version")


def test_advance_applies_updates(machine: TracepathMachine) -> None:
    session = machine.start("s1", "1.2.3.4")
    machine.advance(session.session_id, "version")
    updated = machine.advance(session.session_id, "info", hwid_hash="abc")
    assert updated.hwid_hash == "abc"
    assert machine.get(session.session_id).hwid_hash == "abc"  # type: ignore[union-attr]


def test_step_helpers(machine: TracepathMachine) -> None:
    assert machine.step_index("version") == 1
    assert machine.next_step("flags") == "validate"
    assert machine.next_step("validate") is None
    with pytest.raises(ValueError, match="Unknown tracepath step"):
        machine.step_index("bogus")
