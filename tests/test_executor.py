import pytest

from common.models import Action, ActuatorState, Device, Ownership
from executor.cooldown import CooldownStore
from executor.executor_service import already_satisfied, build_command, execute, execute_action
from common.config import DEFAULT_ENTITIES

from conftest import FakeInvoke, FakeStates


def _action(device, verb, params=None, priority=1, ownership=Ownership.CONTROLLER_OWNED):
    return Action(device=device, verb=verb, params=params or {}, reason=f"{device.value} {verb}",
                  priority=priority, ownership=ownership)


@pytest.fixture
def cooldowns():
    return CooldownStore()


def test_second_call_inside_cooldown_is_skipped(invoke, read_state, cooldowns):
    action = _action(Device.HEATER, "reduce_temp", {"to_temp": 76})

    first = execute([action], invoke, read_state, cooldowns, now=1000.0)
    second = execute([action], invoke, read_state, cooldowns, now=1010.0)

    assert first[0].success is True and first[0].skipped is False
    assert second[0].success is False
    assert second[0].skipped is True
    assert second[0].error == "cooldown active"
    assert len(invoke.calls) == 1


def test_call_allowed_again_after_window(invoke, read_state, cooldowns):
    action = _action(Device.HEATER, "reduce_temp", {"to_temp": 76})
    execute([action], invoke, read_state, cooldowns, now=1000.0)
    result = execute([action], invoke, read_state, cooldowns, now=1031.0)

    assert result[0].success is True
    assert len(invoke.calls) == 2


def test_already_at_target_is_idempotent(invoke, cooldowns):
    read_state = FakeStates({Device.HEATER: ActuatorState(Device.HEATER, mode="heat", setpoint=76.2)})
    action = _action(Device.HEATER, "reduce_temp", {"to_temp": 76})

    result = execute([action], invoke, read_state, cooldowns, now=0.0)

    assert result[0].success is True
    assert result[0].skipped is True
    assert invoke.calls == []
    assert cooldowns.get(action.key) is None


def test_rate_limit_extends_cooldown(cooldowns, read_state):
    invoke = FakeInvoke({"success": False, "error": {"code": 100001, "msg": "Something went wrong"}})
    action = _action(Device.EXHAUST_FAN, "increase_power", {"to_power": 7})

    result = execute([action], invoke, read_state, cooldowns, now=0.0)

    assert result[0].success is False
    assert result[0].error_code == "100001"
    assert cooldowns.get(action.key).duration_ms >= 30 * 60 * 1000
    assert cooldowns.is_active(action.key, 29 * 60)


def test_rate_limited_intensity_blocks_the_shared_key(cooldowns):
    invoke = FakeInvoke({"success": False, "error": "Something went wrong"})
    read_state = FakeStates({Device.HUMIDIFIER: ActuatorState(Device.HUMIDIFIER, mode="On", current_power=4)})
    action = _action(Device.HUMIDIFIER, "set_max_intensity", {"target_intensity": 10})

    execute([action], invoke, read_state, cooldowns, now=0.0)

    assert cooldowns.get("humidifier_intensity").duration_ms == 30 * 60 * 1000
    assert cooldowns.is_active("humidifier_set_max_intensity", 20 * 60)


def test_plain_failure_uses_base_cooldown(cooldowns, read_state):
    invoke = FakeInvoke({"success": False, "error": "Entity not found"})
    action = _action(Device.LIGHT, "turn_off")

    result = execute([action], invoke, read_state, cooldowns, now=0.0)

    assert result[0].error == "Entity not found"
    assert cooldowns.get(action.key).duration_ms == 10_000


def test_failure_does_not_stop_remaining_actions(cooldowns, read_state):
    invoke = FakeInvoke(RuntimeError("connection reset"), {"success": True})
    actions = [
        _action(Device.HEATER, "increase_temp", {"to_temp": 78}, priority=1),
        _action(Device.LIGHT, "turn_off", priority=2),
    ]

    results = execute(actions, invoke, read_state, cooldowns, now=0.0)

    assert [r.success for r in results] == [False, True]
    assert results[0].error == "connection reset"
    assert len(invoke.calls) == 2


def test_actions_run_in_priority_order(invoke, read_state, cooldowns):
    actions = [
        _action(Device.LIGHT, "turn_off", priority=3),
        _action(Device.HEATER, "increase_temp", {"to_temp": 78}, priority=1),
    ]
    results = execute(actions, invoke, read_state, cooldowns, now=0.0)

    assert [r.action.device for r in results] == [Device.HEATER, Device.LIGHT]
    assert [c[0] for c in invoke.calls] == ["climate", "switch"]


def test_external_app_actions_are_recommend_only(invoke, read_state, cooldowns):
    action = _action(Device.HUMIDIFIER, "turn_off", ownership=Ownership.EXTERNAL_APP_OWNED)
    result = execute([action], invoke, read_state, cooldowns, now=0.0)

    assert result[0].skipped is True
    assert result[0].error == "recommend only"
    assert invoke.calls == []


def test_disabling_mid_run_skips_the_rest(read_state, cooldowns):
    enabled = {"value": True}

    def invoke(domain, service, data):
        enabled["value"] = False
        return {"success": True}

    actions = [
        _action(Device.HEATER, "increase_temp", {"to_temp": 78}, priority=1),
        _action(Device.LIGHT, "turn_off", priority=2),
    ]
    results = execute(actions, invoke, read_state, cooldowns, now=0.0, is_enabled=lambda: enabled["value"])

    assert results[0].success is True
    assert results[1].skipped is True
    assert results[1].error == "controller disabled"


def test_unreadable_state_still_dispatches(invoke, cooldowns):
    def read_state(device):
        raise ConnectionError("timeout")

    result = execute_action(_action(Device.LIGHT, "turn_on"), invoke, read_state, cooldowns, now=0.0)
    assert result.success is True
    assert invoke.calls == [("switch", "turn_on", {"entity_id": DEFAULT_ENTITIES["light"]})]


def test_unsupported_action_fails_without_call(invoke, read_state, cooldowns):
    result = execute_action(_action(Device.LIGHT, "dim"), invoke, read_state, cooldowns, now=0.0)
    assert result.success is False
    assert "unsupported action" in result.error
    assert invoke.calls == []


def test_max_intensity_command_depends_on_mode():
    action = _action(Device.HUMIDIFIER, "set_max_intensity", {"target_intensity": 10})
    running = ActuatorState(Device.HUMIDIFIER, mode="VPD", current_power=5)
    stopped = ActuatorState(Device.HUMIDIFIER, mode="Off", current_power=0)

    assert build_command(action, running, DEFAULT_ENTITIES) == (
        "number", "set_value", {"entity_id": DEFAULT_ENTITIES["humidifier_on_power"], "value": 10})
    assert build_command(action, stopped, DEFAULT_ENTITIES) == (
        "select", "select_option", {"entity_id": DEFAULT_ENTITIES["humidifier_mode"], "option": "On"})


def test_fan_power_command_depends_on_mode():
    action = _action(Device.EXHAUST_FAN, "increase_power", {"to_power": 7})
    running = ActuatorState(Device.EXHAUST_FAN, mode="On", current_power=5)
    automatic = ActuatorState(Device.EXHAUST_FAN, mode="Auto", current_power=5)
    switch_on = ("select", "select_option", {"entity_id": DEFAULT_ENTITIES["exhaust_fan_mode"], "option": "On"})

    assert build_command(action, running, DEFAULT_ENTITIES) == (
        "number", "set_value", {"entity_id": DEFAULT_ENTITIES["exhaust_fan_on_power"], "value": 7})
    assert build_command(action, automatic, DEFAULT_ENTITIES) == switch_on
    assert build_command(action, None, DEFAULT_ENTITIES) == switch_on


def test_fan_outside_on_mode_is_not_satisfied():
    fan = ActuatorState(Device.EXHAUST_FAN, mode="Off", current_power=7)
    assert already_satisfied(_action(Device.EXHAUST_FAN, "increase_power", {"to_power": 7}), fan) is None


def test_vendor_devices_share_one_call_window(invoke, read_state, cooldowns):
    actions = [
        _action(Device.HUMIDIFIER, "set_max_intensity", {"target_intensity": 10}, priority=1),
        _action(Device.EXHAUST_FAN, "reduce_power", {"to_power": 2}, priority=2),
    ]

    results = execute(actions, invoke, read_state, cooldowns, now=0.0)

    assert len(invoke.calls) == 1
    assert results[0].success is True
    assert results[1].skipped is True
    assert results[1].error == "cooldown active"
    assert cooldowns.get("ac_infinity").duration_ms == 120_000
    assert not cooldowns.is_active("ac_infinity", 120.0)


def test_satisfied_vendor_action_still_starts_the_shared_window(invoke, cooldowns):
    read_state = FakeStates({Device.EXHAUST_FAN: ActuatorState(Device.EXHAUST_FAN, mode="On", current_power=2)})
    action = _action(Device.EXHAUST_FAN, "reduce_power", {"to_power": 2})

    result = execute([action], invoke, read_state, cooldowns, now=0.0)

    assert result[0].skipped is True and result[0].success is True
    assert cooldowns.is_active("ac_infinity", 60.0)
    assert cooldowns.get(action.key) is None


def test_rate_limit_extends_the_shared_vendor_window(cooldowns, read_state):
    invoke = FakeInvoke({"success": False, "error": "Something went wrong"})
    action = _action(Device.EXHAUST_FAN, "increase_power", {"to_power": 7})

    execute([action], invoke, read_state, cooldowns, now=0.0)

    assert cooldowns.get("ac_infinity").duration_ms == 30 * 60 * 1000


def test_devices_outside_the_vendor_set_skip_the_shared_window(invoke, read_state, cooldowns):
    actions = [
        _action(Device.EXHAUST_FAN, "reduce_power", {"to_power": 2}, priority=1),
        _action(Device.HEATER, "increase_temp", {"to_temp": 78}, priority=2),
    ]

    results = execute(actions, invoke, read_state, cooldowns, now=0.0, vendor_devices={Device.HUMIDIFIER})

    assert [r.success for r in results] == [True, True]
    assert len(invoke.calls) == 2
    assert cooldowns.get("ac_infinity") is None


def test_already_satisfied_checks():
    fan = ActuatorState(Device.EXHAUST_FAN, mode="On", current_power=6.5)
    assert already_satisfied(_action(Device.EXHAUST_FAN, "increase_power", {"to_power": 7}), fan)
    assert already_satisfied(_action(Device.EXHAUST_FAN, "increase_power", {"to_power": 8}), fan) is None
    light = ActuatorState(Device.LIGHT, mode="off")
    assert already_satisfied(_action(Device.LIGHT, "turn_off"), light) == "Already off"
    assert already_satisfied(_action(Device.LIGHT, "turn_on"), None) is None
