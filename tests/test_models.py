import pytest
from pydantic import ValidationError

from shadowgate.common.models import (
    BlacklistRequest,
    CreateKeyRequest,
    HandshakeRequest,
    HeartbeatRequest,
    LicenseKey,
    ScriptFlags,
    ScriptRecord,
    SecurityDecision,
    ValidateRequest,
)


def test_script_record_defaults() -> None:
    script = ScriptRecord(script_id="s1", name="Demo", content="print(1)")
    assert script.flags == ScriptFlags()
    assert script.flags.hwid_lock is True
    assert script.flags.max_warnings == 3  # noqa: PLR2004
    assert script.webhook_url is None


def test_script_flags_reject_zero_warnings() -> None:
    with pytest.raises(ValidationError):
        ScriptFlags(max_warnings=0)


def test_license_key_round_trips_through_dump() -> None:
    key = LicenseKey(key_id="k1", key_value="V", script_id="s1", key_days=30)
    restored = LicenseKey.model_validate(key.model_dump())
    assert restored == key
    assert restored.is_banned is False
    assert restored.hwid_reset_count == 0


def test_handshake_request_requires_key() -> None:
    with pytest.raises(ValidationError):
        HandshakeRequest(key="", script_id="s1")


def test_validate_request_delivery_mode() -> None:
    req = ValidateRequest(key="K", script_id="s1", delivery_mode="binary")
    assert req.delivery_mode == "binary"
    assert req.detected_threats == []
    with pytest.raises(ValidationError):
        ValidateRequest(key="K", script_id="s1", delivery_mode="zip")  # type: ignore[arg-type]


def test_heartbeat_request_defaults_to_ping() -> None:
    assert HeartbeatRequest().action == "ping"
    with pytest.raises(ValidationError):
        HeartbeatRequest(action="restart")  # type: ignore[arg-type]


def test_admin_requests_validate_ranges() -> None:
    with pytest.raises(ValidationError):
        CreateKeyRequest(password="p", script_id="s1", key_days=0)
    with pytest.raises(ValidationError):
        BlacklistRequest(password="p", identifier="1.2.3.4", ttl=-5)
    assert BlacklistRequest(password="p", identifier="1.2.3.4").permanent is False


def test_security_decision_should_ban() -> None:
    assert SecurityDecision(action="temp_ban").should_ban
    assert SecurityDecision(action="perm_ban").should_ban
    assert not SecurityDecision(action="warning").should_ban
    assert not SecurityDecision().should_ban
