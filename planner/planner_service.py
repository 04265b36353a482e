import logging
from typing import Dict, List, Mapping, Optional, Tuple

from common.config import DEFAULT_OWNERSHIP
from common.models import (
    Action,
    ActuatorState,
    Device,
    Ownership,
    Plan,
    Problem,
    ProblemType,
    SensorSnapshot,
    TargetProfile,
)

logger = logging.getLogger("Planner")

MAX_INTENSITY = 10
MAX_FAN_POWER = 10
FAN_STEP = 2
FAN_REDUCED_POWER = 2
FAN_REDUCE_ABOVE = 3          # fan faster than this fights the humidifier
VPD_HEADROOM_KPA = 0.1
HUMIDITY_EXCESS_PCT = 10
TEMP_MARGIN = 2

HUMIDIFIER_ON_MODES = ("On", "VPD")

# Only intensity targets split otherwise identical actions
INTENSITY_PARAM = "target_intensity"


def _power(actuators: Mapping[Device, ActuatorState], device: Device) -> Optional[float]:
    state = actuators.get(device)
    return state.current_power if state else None


def humidifier_at_max(state: Optional[ActuatorState]) -> bool:
    """CloudForge counts as maxed out when it runs (On or VPD mode) at intensity 10."""
    if state is None or state.mode not in HUMIDIFIER_ON_MODES:
        return False
    return state.current_power is not None and state.current_power >= MAX_INTENSITY


class _PlanBuilder:
    """Collects candidate actions for one planning pass."""

    def __init__(self, snapshot: SensorSnapshot, target: TargetProfile,
                 actuators: Mapping[Device, ActuatorState], ownership: Mapping[Device, Ownership]):
        self.current = snapshot
        self.target = target
        self.actuators = actuators
        self.ownership = ownership
        self.candidates: List[Action] = []

    def add(self, problem: Problem, device: Device, verb: str, params: dict, reason: str, priority: int):
        self.candidates.append(
            Action(
                device=device,
                verb=verb,
                params=params,
                reason=reason,
                priority=priority,
                ownership=self.ownership.get(device, Ownership.EXTERNAL_APP_OWNED),
                problem=problem.type,
            )
        )

    def humidify(self, problem: Problem):
        """Humidifier to max intensity, plus slow the fan so it stops exhausting the moisture."""
        if not humidifier_at_max(self.actuators.get(Device.HUMIDIFIER)):
            self.add(problem, Device.HUMIDIFIER, "set_max_intensity",
                     {"target_intensity": MAX_INTENSITY},
                     f"{problem.description}. Set humidifier to max intensity ({MAX_INTENSITY}) to add moisture.",
                     priority=1)

        fan_power = _power(self.actuators, Device.EXHAUST_FAN)
        if fan_power is not None and fan_power > FAN_REDUCE_ABOVE:
            self.add(problem, Device.EXHAUST_FAN, "reduce_power",
                     {"to_power": FAN_REDUCED_POWER},
                     f"Reduce exhaust fan from {fan_power:g} to {FAN_REDUCED_POWER} to retain moisture.",
                     priority=2)

    def increase_fan(self, problem: Problem, priority: int, why: str):
        fan_power = _power(self.actuators, Device.EXHAUST_FAN)
        if fan_power is None:
            logger.warning(f"Exhaust fan power unknown, not planning a fan increase for {problem.type.value}")
            return
        to_power = min(fan_power + FAN_STEP, MAX_FAN_POWER)
        if to_power <= fan_power:
            return
        self.add(problem, Device.EXHAUST_FAN, "increase_power",
                 {"to_power": to_power},
                 f"Increase exhaust fan from {fan_power:g} to {to_power:g} {why}.",
                 priority=priority)

    def humidifier_off(self, problem: Problem, why: str):
        self.add(problem, Device.HUMIDIFIER, "turn_off", {},
                 f"{problem.description}. Turn off humidifier {why}.",
                 priority=1)

    def heater(self, problem: Problem, verb: str, to_temp: float, why: str):
        self.add(problem, Device.HEATER, verb, {"to_temp": to_temp},
                 f"Set heater to {to_temp:g}°F {why}.",
                 priority=1)

    def handle(self, problem: Problem):
        cur, tgt = self.current, self.target

        if problem.type == ProblemType.VPD_HIGH:
            # Too dry: either humidity is low or the air is too warm
            if cur.humidity is not None and cur.humidity < tgt.humidity_optimal:
                self.humidify(problem)
            elif cur.temperature is not None and cur.temperature > tgt.temp_optimal:
                self.heater(problem, "reduce_temp", tgt.temp_optimal - 1,
                            f"to lower VPD (currently {cur.temperature:.1f}°F)")

        elif problem.type == ProblemType.VPD_LOW:
            self.humidifier_off(problem, "to stop adding moisture")
            if cur.temperature is not None and cur.temperature > tgt.temp_min + TEMP_MARGIN:
                self.increase_fan(problem, 2, "to remove excess moisture")

        elif problem.type == ProblemType.TEMP_HIGH:
            if cur.vpd is not None and cur.vpd < tgt.vpd_max - VPD_HEADROOM_KPA:
                self.increase_fan(problem, 1, f"for cooling (VPD allows: {cur.vpd:.2f} kPa)")
            else:
                self.heater(problem, "reduce_temp", tgt.temp_optimal,
                            f"(currently {problem.current_value:.1f}°F)")

        elif problem.type == ProblemType.TEMP_LOW:
            self.heater(problem, "increase_temp", tgt.temp_optimal,
                        f"(currently {problem.current_value:.1f}°F)")

        elif problem.type == ProblemType.HUMIDITY_LOW:
            self.humidify(problem)

        elif problem.type == ProblemType.HUMIDITY_HIGH:
            if cur.humidity is not None and cur.humidity > tgt.humidity_max + HUMIDITY_EXCESS_PCT:
                self.humidifier_off(problem, f"(exceeds max by {HUMIDITY_EXCESS_PCT}%+)")
            self.increase_fan(problem, 2, "to remove excess moisture")


def dedup_key(action: Action) -> Tuple[Device, str, object]:
    return action.device, action.verb, action.params.get(INTENSITY_PARAM)


def deduplicate_actions(actions: List[Action]) -> List[Action]:
    """
    Remove duplicate (device, verb) actions, keeping the most urgent one.
    Intensity actions are only duplicates when they ask for the same
    intensity. Ties keep the action planned first.

    Args:
        actions: Candidate actions in planning order

    Returns:
        Surviving actions sorted ascending by priority
    """
    seen: Dict[Tuple[Device, str, object], Action] = {}
    for action in actions:
        key = dedup_key(action)
        if key not in seen or action.priority < seen[key].priority:
            seen[key] = action
    return sorted(seen.values(), key=lambda a: a.priority)


def plan(
    problems: List[Problem],
    snapshot: SensorSnapshot,
    target: TargetProfile,
    actuators: Mapping[Device, ActuatorState],
    ownership: Mapping[Device, Ownership] = DEFAULT_OWNERSHIP,
) -> Plan:
    """
    Turn analyzed problems into one coordinated plan. Every action carries its
    ownership tag; `Plan.executable` and `Plan.recommendations` split them.
    """
    builder = _PlanBuilder(snapshot, target, actuators, ownership)
    for problem in problems:
        logger.info(f"Planning for issue: {problem.type.value} (severity: {problem.severity})")
        builder.handle(problem)

    actions = deduplicate_actions(builder.candidates)
    if not actions and problems:
        logger.warning(f"No actions generated for issues: {[p.type.value for p in problems]}")
    return Plan(actions=actions)
