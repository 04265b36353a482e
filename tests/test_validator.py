import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from common.config import load_hard_limits, load_system_config
from common.models import AutonomousActionRequest, HardLimit
from validator.validator_service import (
    ValidatorService,
    execute_autonomous_action,
    request_from_payload,
    validate,
)

from conftest import FakeInvoke

TARGET_VPD = "number.cloudforge_t5_target_vpd"
SYSTEM_CONFIG = Path(__file__).resolve().parent.parent / "system_config.json"


@pytest.fixture
def hard_limits():
    return {TARGET_VPD: HardLimit(entity=TARGET_VPD, min=0.3, max=1.2, max_change_per_invocation=0.15)}


def _request(current, new, entity=TARGET_VPD):
    return AutonomousActionRequest(entity=entity, current_value=current, new_value=new, reason="test")


def test_change_too_large_is_rejected(hard_limits):
    decision = validate(_request(0.6, 0.85), hard_limits)
    assert decision.accepted is False
    assert "0.25" in decision.reason
    assert "0.15" in decision.reason


def test_small_change_is_accepted(hard_limits):
    decision = validate(_request(0.6, 0.5), hard_limits)
    assert decision.accepted is True


def test_change_exactly_at_limit_is_accepted(hard_limits):
    assert validate(_request(0.6, 0.75), hard_limits).accepted is True


def test_unknown_entity_is_rejected(hard_limits):
    decision = validate(_request(1.0, 1.0, entity="number.exhaust_fan_on_power"), hard_limits)
    assert decision.accepted is False
    assert "not in the allowed list" in decision.reason


@pytest.mark.parametrize("current, new", [
    (float("nan"), 0.6),
    (0.6, float("inf")),
    ("0.6", 0.7),
    (None, 0.7),
    (True, 0.7),
])
def test_non_finite_values_are_rejected(hard_limits, current, new):
    decision = validate(_request(current, new), hard_limits)
    assert decision.accepted is False
    assert "Invalid values" in decision.reason


def test_value_outside_range_is_rejected(hard_limits):
    decision = validate(_request(1.15, 1.25), hard_limits)
    assert decision.accepted is False
    assert "outside allowed range" in decision.reason


def test_rejected_request_is_never_dispatched(hard_limits):
    invoke = FakeInvoke()
    result = execute_autonomous_action(_request(0.6, 0.85), hard_limits, invoke)

    assert result.blocked is True
    assert result.executed is False
    assert invoke.calls == []


def test_accepted_request_sets_value(hard_limits):
    invoke = FakeInvoke()
    result = execute_autonomous_action(_request(0.6, 0.5), hard_limits, invoke)

    assert result.executed is True
    assert result.blocked is False
    assert invoke.calls == [("number", "set_value", {"entity_id": TARGET_VPD, "value": 0.5})]


def test_accepted_request_reports_dispatch_failure(hard_limits):
    invoke = FakeInvoke({"success": False, "error": "Entity not available"})
    result = execute_autonomous_action(_request(0.6, 0.5), hard_limits, invoke)

    assert result.executed is False
    assert result.blocked is False
    assert result.reason == "Entity not available"


def test_request_from_payload_accepts_both_key_styles():
    camel = request_from_payload({"entity": TARGET_VPD, "currentValue": 0.6, "newValue": 0.7})
    snake = request_from_payload({"entity": TARGET_VPD, "current_value": 0.6, "new_value": 0.7})
    assert camel == snake


def test_shipped_hard_limits_load():
    limits = load_hard_limits(load_system_config(SYSTEM_CONFIG))
    assert limits[TARGET_VPD].max_change_per_invocation == 0.15
    with pytest.raises(TypeError):
        limits["number.other"] = limits[TARGET_VPD]


def test_service_publishes_decision(hard_limits):
    invoke = FakeInvoke()
    service = ValidatorService(hard_limits, invoke, tent_id="tent1")
    published = []
    client = SimpleNamespace(publish=lambda topic, payload: published.append((topic, json.loads(payload))))
    msg = SimpleNamespace(topic="grow/tent1/proposals",
                          payload=json.dumps({"entity": TARGET_VPD, "currentValue": 0.6, "newValue": 0.9}).encode())

    service.on_message(client, None, msg)

    assert published[0][0] == "grow/tent1/decisions"
    assert published[0][1]["blocked"] is True
    assert invoke.calls == []
