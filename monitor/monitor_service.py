import logging
from typing import Any, Callable, Dict, Mapping, Optional

from common.config import DEFAULT_ENTITIES
from common.models import ActuatorState, Device, SensorSnapshot

UNKNOWN_STATES = ("unknown", "unavailable", "none", "")

# get_state(entity_id) -> {"state": ..., "attributes": {...}} or None
GetStateFn = Callable[[str], Optional[Dict[str, Any]]]


def parse_reading(raw) -> Optional[float]:
    """Numeric value of a state string; None for unknown or garbage."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    text = str(raw).strip()
    if text.lower() in UNKNOWN_STATES:
        return None
    try:
        return float(text)
    except ValueError:
        return None


class Monitor:
    def __init__(self, get_state: GetStateFn, entities: Mapping[str, str] = DEFAULT_ENTITIES):
        self.logger = logging.getLogger("Monitor")
        self.get_state = get_state
        self.entities = entities

    def _state(self, name: str) -> Optional[Dict[str, Any]]:
        entity_id = self.entities.get(name)
        if not entity_id:
            return None
        return self.get_state(entity_id)

    def _raw(self, name: str):
        state = self._state(name)
        return state.get("state") if state else None

    def _text(self, name: str) -> Optional[str]:
        raw = self._raw(name)
        if raw is None or str(raw).lower() in UNKNOWN_STATES:
            return None
        return str(raw)

    def read_snapshot(self) -> SensorSnapshot:
        snapshot = SensorSnapshot(
            temperature=parse_reading(self._raw("temperature")),
            humidity=parse_reading(self._raw("humidity")),
            vpd=parse_reading(self._raw("vpd")),
        )
        self.logger.info(
            f"Snapshot: temp={snapshot.temperature}°F humidity={snapshot.humidity}% vpd={snapshot.vpd} kPa"
        )
        return snapshot

    def read_actuator_state(self, device: Device) -> Optional[ActuatorState]:
        if device == Device.HUMIDIFIER:
            return ActuatorState(
                device=device,
                mode=self._text("humidifier_mode"),
                current_power=parse_reading(self._raw("humidifier_on_power")),
            )

        if device == Device.EXHAUST_FAN:
            return ActuatorState(
                device=device,
                mode=self._text("exhaust_fan_mode"),
                current_power=parse_reading(self._raw("exhaust_fan_current_power")),
            )

        if device == Device.HEATER:
            state = self._state("heater")
            if not state:
                return None
            return ActuatorState(
                device=device,
                mode=state.get("state"),
                setpoint=parse_reading((state.get("attributes") or {}).get("temperature")),
            )

        if device == Device.LIGHT:
            return ActuatorState(device=device, mode=self._text("light"))

        return None

    def read_actuator_states(self) -> Dict[Device, Optional[ActuatorState]]:
        return {device: self.read_actuator_state(device) for device in Device}
