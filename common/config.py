import os
import json
import logging
from datetime import datetime, time as dt_time
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional

import requests

from common.errors import ConfigError
from common.models import Device, HardLimit, Ownership, TargetProfile

logger = logging.getLogger("Config")

TENT_ID = os.getenv("TENT_ID", "tent1")
GROW_STAGE = os.getenv("GROW_STAGE")
SYSTEM_CONFIG_PATH = os.getenv("SYSTEM_CONFIG_PATH", "system_config.json")
CONFIG_SERVICE_URL = os.getenv("CONFIG_SERVICE_URL", "http://configuration:5000")
CONTROL_INTERVAL_S = float(os.getenv("CONTROL_INTERVAL_S", 300))

HA_URL = os.getenv("HA_URL", "http://homeassistant:8123")
HA_TOKEN = os.getenv("HA_TOKEN")
HA_TIMEOUT_S = float(os.getenv("HA_TIMEOUT_S", 10))

# Base cooldowns per device (ms)
DEVICE_COOLDOWNS_MS = {
    Device.HUMIDIFIER.value: 120_000,
    Device.EXHAUST_FAN.value: 60_000,
    Device.HEATER.value: 30_000,
    Device.LIGHT.value: 10_000,
}
DEFAULT_COOLDOWN_MS = 30_000

# Humidifier intensity changes share one key across verbs
INTENSITY_COOLDOWN_KEY = "humidifier_intensity"
INTENSITY_COOLDOWN_MS = 5 * 60 * 1000
RATE_LIMIT_COOLDOWN_MS = 30 * 60 * 1000
VPD_SETTINGS_COOLDOWN_MS = 60 * 60 * 1000

# Devices behind the same vendor cloud account share one call window
VENDOR_COOLDOWN_KEY = "ac_infinity"
VENDOR_COOLDOWN_MS = 120_000
VENDOR_DEVICES = frozenset({Device.HUMIDIFIER, Device.EXHAUST_FAN})

# Vendor (AC Infinity cloud) rate-limit signature
RATE_LIMIT_ERROR_CODES = ("100001",)
RATE_LIMIT_PATTERNS = ("Something went wrong",)

DEFAULT_OWNERSHIP = MappingProxyType({
    Device.HUMIDIFIER: Ownership.EXTERNAL_APP_OWNED,
    Device.EXHAUST_FAN: Ownership.EXTERNAL_APP_OWNED,
    Device.HEATER: Ownership.CONTROLLER_OWNED,
    Device.LIGHT: Ownership.CONTROLLER_OWNED,
})

DEFAULT_ENTITIES = {
    "temperature": "sensor.ac_infinity_controller_69_pro_temperature",
    "humidity": "sensor.ac_infinity_controller_69_pro_humidity",
    "vpd": "sensor.ac_infinity_controller_69_pro_vpd",
    "light": "switch.light",
    "heater": "climate.tent_heater",
    "exhaust_fan_mode": "select.exhaust_fan_active_mode",
    "exhaust_fan_current_power": "sensor.exhaust_fan_current_power",
    "exhaust_fan_on_power": "number.exhaust_fan_on_power",
    "humidifier_mode": "select.cloudforge_t5_active_mode",
    "humidifier_on_power": "number.cloudforge_t5_on_power",
    "humidifier_target_vpd": "number.cloudforge_t5_target_vpd",
    "humidifier_vpd_high_trigger": "number.cloudforge_t5_vpd_high_trigger",
    "humidifier_vpd_low_trigger": "number.cloudforge_t5_vpd_low_trigger",
}

# Used when no stage is configured at all
FALLBACK_TARGETS = TargetProfile(
    temp_min=75.0, temp_max=82.0, temp_optimal=77.0,
    humidity_min=65.0, humidity_max=75.0, humidity_optimal=70.0,
    vpd_min=0.4, vpd_max=0.8, vpd_optimal=0.6,
)


def load_system_config(path=SYSTEM_CONFIG_PATH):
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Error loading system config from {path}: {e}")
        return {"stages": []}


def fetch_system_config(url: str = CONFIG_SERVICE_URL, fallback_path: str = SYSTEM_CONFIG_PATH) -> dict:
    """
    Fetch the full system config from the configuration service.
    Falls back to the local JSON file when the service is unreachable.
    """
    try:
        resp = requests.get(f"{url}/config/all", timeout=5)
        if resp.status_code == 200:
            logger.info(f"Loaded system config from {url}")
            return resp.json()
        logger.warning(f"Config service returned {resp.status_code}, using {fallback_path}")
    except requests.RequestException as e:
        logger.warning(f"Config service unreachable ({e}), using {fallback_path}")
    return load_system_config(fallback_path)


def get_stage(system_config: dict, stage_id: Optional[str]) -> Optional[dict]:
    for stage in system_config.get("stages", []):
        if stage.get("id") == stage_id:
            return stage
    return None


def active_stage_id(system_config: dict) -> Optional[str]:
    return GROW_STAGE or system_config.get("active_stage")


def get_config(key: str, system_config: dict, stage_id: str = None, default=None):
    """
    Retrieve config value with precedence:
    1. Stage-specific config (stage['config'])
    2. Global defaults (system_config['defaults'])
    3. Hardcoded default
    """
    if stage_id:
        stage = get_stage(system_config, stage_id)
        if stage and key in stage.get("config", {}):
            return stage["config"][key]

    if "defaults" in system_config and key in system_config["defaults"]:
        return system_config["defaults"][key]

    return default


def _parse_hhmm(value: str) -> dt_time:
    hours, minutes = value.split(":")
    return dt_time(int(hours), int(minutes))


def is_daytime(stage: Optional[dict], now: datetime) -> bool:
    """Lights-on check against the stage light schedule; windows may wrap midnight."""
    schedule = (stage or {}).get("light_schedule")
    if not schedule:
        return True
    on = _parse_hhmm(schedule["on_time"])
    off = _parse_hhmm(schedule["off_time"])
    t = now.time()
    if on == off:
        return False
    if on < off:
        return on <= t < off
    return t >= on or t < off


def target_profile_for_stage(stage: Optional[dict], is_day: bool = True) -> TargetProfile:
    if not stage:
        logger.warning("No stage provided, using fallback targets")
        return FALLBACK_TARGETS

    try:
        temp = stage["temperature"]["day" if is_day else "night"]
        humidity = stage["humidity"]
        vpd = stage["vpd"]
        return TargetProfile(
            temp_min=float(temp["min"]),
            temp_max=float(temp["max"]),
            temp_optimal=float(temp["target"]),
            humidity_min=float(humidity["min"]),
            humidity_max=float(humidity["max"]),
            humidity_optimal=float(humidity["optimal"]),
            vpd_min=float(vpd["min"]),
            vpd_max=float(vpd["max"]),
            vpd_optimal=float(vpd.get("optimal", (vpd["min"] + vpd["max"]) / 2)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Stage {stage.get('id')} has incomplete targets: {e}") from e


def cooldown_table(system_config: dict) -> Dict[str, int]:
    table = dict(DEVICE_COOLDOWNS_MS)
    table.update(get_config("cooldowns_ms", system_config, default={}) or {})
    return {k: int(v) for k, v in table.items()}


def vendor_devices(system_config: dict) -> FrozenSet[Device]:
    configured = get_config("vendor_devices", system_config, default=None)
    if configured is None:
        return VENDOR_DEVICES
    try:
        return frozenset(Device(device) for device in configured)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid vendor device list: {e}") from e


def ownership_map(system_config: dict) -> Mapping[Device, Ownership]:
    configured = get_config("ownership", system_config, default=None)
    if not configured:
        return DEFAULT_OWNERSHIP
    try:
        result = dict(DEFAULT_OWNERSHIP)
        for device, owner in configured.items():
            result[Device(device)] = Ownership(owner)
    except ValueError as e:
        raise ConfigError(f"Invalid ownership entry: {e}") from e
    return MappingProxyType(result)


def entity_ids(system_config: dict) -> Dict[str, str]:
    entities = dict(DEFAULT_ENTITIES)
    entities.update(system_config.get("entities", {}))
    return entities


def load_hard_limits(system_config: dict) -> Mapping[str, HardLimit]:
    """Build the read-only hard-limit table keyed by entity id."""
    limits: Dict[str, HardLimit] = {}
    for entity, raw in system_config.get("hard_limits", {}).items():
        try:
            limit = HardLimit(
                entity=entity,
                min=float(raw["min"]),
                max=float(raw["max"]),
                max_change_per_invocation=float(raw["max_change"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid hard limit for {entity}: {e}") from e
        if limit.min > limit.max or limit.max_change_per_invocation < 0:
            raise ConfigError(f"Inconsistent hard limit for {entity}: {raw}")
        limits[entity] = limit
    return MappingProxyType(limits)
