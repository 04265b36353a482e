import logging
import time
from typing import AbstractSet, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from common.config import (
    DEFAULT_ENTITIES,
    INTENSITY_COOLDOWN_KEY,
    RATE_LIMIT_ERROR_CODES,
    RATE_LIMIT_PATTERNS,
    VENDOR_COOLDOWN_KEY,
    VENDOR_DEVICES,
)
from common.models import Action, ActuatorState, Device, ExecutionResult, Ownership
from executor.cooldown import CooldownStore
from executor.dispatch import InvokeFn, dispatch, is_rate_limited
from planner.planner_service import HUMIDIFIER_ON_MODES, humidifier_at_max

logger = logging.getLogger("Executor")

ReadStateFn = Callable[[Device], Optional[ActuatorState]]

FAN_POWER_TOLERANCE = 1.0
HEATER_SETPOINT_TOLERANCE = 0.5


def uses_intensity_cooldown(action: Action) -> bool:
    return action.device == Device.HUMIDIFIER and action.verb == "set_max_intensity"


def already_satisfied(action: Action, state: Optional[ActuatorState]) -> Optional[str]:
    """Return why the device already matches the action, or None if a call is needed."""
    if state is None:
        return None
    device, verb, params = action.device, action.verb, action.params

    if device == Device.HUMIDIFIER:
        if verb == "set_max_intensity" and humidifier_at_max(state):
            return "Already on at max intensity"
        if verb == "turn_off" and state.mode == "Off":
            return "Already Off"
        if verb == "turn_on" and state.mode in HUMIDIFIER_ON_MODES:
            return "Already On"

    elif device == Device.EXHAUST_FAN and "to_power" in params:
        power = state.current_power
        if state.mode in (None, "On") and power is not None and abs(power - params["to_power"]) < FAN_POWER_TOLERANCE:
            return f"Already at power {state.current_power:g}"

    elif device == Device.HEATER and "to_temp" in params:
        if state.setpoint is not None and abs(state.setpoint - params["to_temp"]) < HEATER_SETPOINT_TOLERANCE:
            return f"Heater already set to {state.setpoint:g}°F"

    elif device == Device.LIGHT and verb in ("turn_on", "turn_off"):
        if state.mode is not None and state.mode.lower() == verb[len("turn_"):]:
            return f"Already {state.mode}"

    return None


def build_command(action: Action, state: Optional[ActuatorState],
                  entities: Mapping[str, str]) -> Tuple[str, str, Dict]:
    """
    Translate an action into a (domain, service, data) call.

    Raises:
        ValueError: the device/verb pair has no command
    """
    device, verb, params = action.device, action.verb, action.params

    if device == Device.HUMIDIFIER:
        if verb == "set_max_intensity":
            # Intensity can only be set while the humidifier runs; switch it on first
            if state is not None and state.mode in HUMIDIFIER_ON_MODES:
                return "number", "set_value", {"entity_id": entities["humidifier_on_power"],
                                               "value": params["target_intensity"]}
            return "select", "select_option", {"entity_id": entities["humidifier_mode"], "option": "On"}
        if verb in ("turn_on", "turn_off"):
            option = "On" if verb == "turn_on" else "Off"
            return "select", "select_option", {"entity_id": entities["humidifier_mode"], "option": option}

    elif device == Device.EXHAUST_FAN and verb in ("reduce_power", "increase_power"):
        # On power only applies in On mode; switch the mode first
        if state is None or state.mode != "On":
            return "select", "select_option", {"entity_id": entities["exhaust_fan_mode"], "option": "On"}
        return "number", "set_value", {"entity_id": entities["exhaust_fan_on_power"], "value": params["to_power"]}

    elif device == Device.HEATER and verb in ("reduce_temp", "increase_temp"):
        return "climate", "set_temperature", {"entity_id": entities["heater"], "temperature": params["to_temp"]}

    elif device == Device.LIGHT and verb in ("turn_on", "turn_off"):
        return "switch", verb, {"entity_id": entities["light"]}

    raise ValueError(f"No command for {device.value}.{verb}")


def _read_state(read_actuator_state: ReadStateFn, device: Device) -> Optional[ActuatorState]:
    try:
        return read_actuator_state(device)
    except Exception as e:
        logger.warning(f"Could not read {device.value} state, assuming unknown: {e}")
        return None


def execute_action(
    action: Action,
    invoke: InvokeFn,
    read_actuator_state: ReadStateFn,
    cooldowns: CooldownStore,
    now: float,
    entities: Mapping[str, str] = DEFAULT_ENTITIES,
    rate_limit_codes: Sequence[str] = RATE_LIMIT_ERROR_CODES,
    rate_limit_patterns: Sequence[str] = RATE_LIMIT_PATTERNS,
    vendor_devices: AbstractSet[Device] = VENDOR_DEVICES,
) -> ExecutionResult:
    if action.ownership != Ownership.CONTROLLER_OWNED:
        logger.info(f"Skipping {action.key} - owned by the external app, recommend only")
        return ExecutionResult(action=action, success=False, skipped=True,
                               error="recommend only", reason="Device is controlled by the external app")

    key = cooldowns.key_for(action)
    keys = [key, INTENSITY_COOLDOWN_KEY] if uses_intensity_cooldown(action) else [key]
    vendor_call = action.device in vendor_devices
    if vendor_call:
        keys.append(VENDOR_COOLDOWN_KEY)
    for k in keys:
        if cooldowns.is_active(k, now):
            remaining = cooldowns.remaining_s(k, now)
            logger.info(f"Skipping {action.key} - {k} cooldown active ({remaining:.0f}s remaining)")
            return ExecutionResult(action=action, success=False, skipped=True,
                                   error="cooldown active", reason=f"{remaining:.0f}s remaining")

    state = _read_state(read_actuator_state, action.device)
    satisfied = already_satisfied(action, state)
    if satisfied:
        logger.info(f"{action.key}: {satisfied}, skipping service call")
        if vendor_call:
            cooldowns.record(VENDOR_COOLDOWN_KEY, now)
        return ExecutionResult(action=action, success=True, skipped=True, reason=satisfied)

    try:
        domain, service, data = build_command(action, state, entities)
    except (KeyError, ValueError) as e:
        logger.error(f"Cannot build command for {action.key}: {e}")
        return ExecutionResult(action=action, success=False, error=f"unsupported action: {e}")

    logger.info(f"Executing: {action.reason}")
    result = dispatch(invoke, domain, service, data)

    if result.success:
        for k in keys:
            cooldowns.record(k, now)
        return ExecutionResult(action=action, success=True, data=result.data)

    if is_rate_limited(result, rate_limit_codes, rate_limit_patterns):
        logger.warning(f"Rate limit detected for {action.key}, extending cooldown")
        for k in keys:
            cooldowns.extend(k, now)
    else:
        cooldowns.record(key, now)

    return ExecutionResult(action=action, success=False, error=result.error,
                           error_code=result.error_code, data=result.data)


def execute(
    actions: List[Action],
    invoke: InvokeFn,
    read_actuator_state: ReadStateFn,
    cooldowns: CooldownStore,
    now: Optional[float] = None,
    is_enabled: Optional[Callable[[], bool]] = None,
    entities: Mapping[str, str] = DEFAULT_ENTITIES,
    rate_limit_codes: Sequence[str] = RATE_LIMIT_ERROR_CODES,
    rate_limit_patterns: Sequence[str] = RATE_LIMIT_PATTERNS,
    vendor_devices: AbstractSet[Device] = VENDOR_DEVICES,
) -> List[ExecutionResult]:
    """
    Dispatch actions one at a time, most urgent first.

    Args:
        actions: Plan actions (only controller-owned ones are dispatched)
        invoke: invoke(domain, service, data) actuator function
        read_actuator_state: Returns the current ActuatorState of a device
        cooldowns: The controller's CooldownStore
        now: Epoch seconds for this cycle (defaults to the wall clock)
        is_enabled: Checked before each action; False stops the remaining ones
        vendor_devices: Devices that share the vendor cooldown key

    Returns:
        One ExecutionResult per action, in execution order
    """
    results: List[ExecutionResult] = []
    ordered = sorted(actions, key=lambda a: a.priority)

    for index, action in enumerate(ordered):
        if is_enabled is not None and not is_enabled():
            pending = ordered[index:]
            logger.warning(f"Controller disabled, skipping {len(pending)} remaining action(s)")
            results.extend(
                ExecutionResult(action=a, success=False, skipped=True, error="controller disabled")
                for a in pending
            )
            break

        current = now if now is not None else time.time()
        results.append(
            execute_action(action, invoke, read_actuator_state, cooldowns, current,
                           entities, rate_limit_codes, rate_limit_patterns, vendor_devices)
        )

    succeeded = sum(1 for r in results if r.success and not r.skipped)
    failed = sum(1 for r in results if not r.success and not r.skipped)
    logger.info(f"Executed plan: {succeeded} applied, {failed} failed, {len(results) - succeeded - failed} skipped")
    return results
