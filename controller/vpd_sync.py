import logging
from typing import Callable, Mapping, Optional

from common.config import DEFAULT_ENTITIES, VPD_SETTINGS_COOLDOWN_MS
from common.models import VpdSyncResult
from executor.cooldown import CooldownStore
from executor.dispatch import InvokeFn, dispatch

logger = logging.getLogger("VpdSync")

VPD_SETTINGS_COOLDOWN_KEY = "vpd_settings_update"
# AC Infinity only accepts VPD settings in 0.1 kPa steps
VPD_STEP_KPA = 0.1
MIN_LOW_TRIGGER_KPA = 0.1

SETTING_ENTITIES = {
    "target": "humidifier_target_vpd",
    "high_trigger": "humidifier_vpd_high_trigger",
    "low_trigger": "humidifier_vpd_low_trigger",
}

ReadValueFn = Callable[[str], Optional[float]]


def vpd_settings_for_stage(vpd: dict) -> dict:
    """Target, high trigger and low trigger (kPa) for a stage's VPD band."""
    vpd_min, vpd_max = float(vpd["min"]), float(vpd["max"])
    target = vpd.get("optimal")
    if target is None:
        target = (vpd_min + vpd_max) / 2
    return {
        "target": round(float(target), 2),
        "high_trigger": round(vpd_max + VPD_STEP_KPA, 2),
        "low_trigger": round(max(MIN_LOW_TRIGGER_KPA, vpd_min - VPD_STEP_KPA), 2),
    }


def sync_vpd_settings(
    stage: Optional[dict],
    invoke: InvokeFn,
    read_value: ReadValueFn,
    cooldowns: CooldownStore,
    now: float,
    entities: Mapping[str, str] = DEFAULT_ENTITIES,
    cooldown_ms: int = VPD_SETTINGS_COOLDOWN_MS,
) -> VpdSyncResult:
    """
    Push the stage's VPD band to the humidifier's own VPD mode settings.

    Settings that are already within one step of the wanted value are left
    alone. The hour-long cooldown starts only after a clean run that changed
    something.
    """
    if cooldowns.is_active(VPD_SETTINGS_COOLDOWN_KEY, now):
        remaining = cooldowns.remaining_s(VPD_SETTINGS_COOLDOWN_KEY, now) / 60
        logger.info(f"VPD settings update skipped - cooldown active ({remaining:.0f} minutes remaining)")
        return VpdSyncResult(success=False, skipped=True,
                             reason=f"Cooldown active ({remaining:.0f} minutes remaining)")

    if not stage or not stage.get("vpd"):
        logger.warning("No stage or VPD targets provided for VPD settings update")
        return VpdSyncResult(success=False, reason="No stage or VPD targets provided")

    settings = vpd_settings_for_stage(stage["vpd"])
    logger.info(
        f"Updating VPD settings for stage {stage.get('name', stage.get('id'))}: "
        f"target {settings['target']:.2f}, high {settings['high_trigger']:.2f}, low {settings['low_trigger']:.2f} kPa"
    )

    result = VpdSyncResult(success=True)
    for name, value in settings.items():
        entity_id = entities[SETTING_ENTITIES[name]]
        current = read_value(entity_id)

        if current is not None and abs(current - value) < VPD_STEP_KPA:
            result.unchanged.append({"entity": entity_id, "reason": f"Change too small ({abs(current - value):.2f})"})
            continue

        outcome = dispatch(invoke, "number", "set_value", {"entity_id": entity_id, "value": value})
        if outcome.success:
            result.changes.append({"entity": entity_id, "from": current, "to": value})
        else:
            result.success = False
            result.errors.append({"entity": entity_id, "error": outcome.error or "Unknown error"})

    if result.success and result.changes:
        cooldowns.record(VPD_SETTINGS_COOLDOWN_KEY, now, cooldown_ms)
        logger.info(f"VPD settings update complete: {len(result.changes)} changed, {len(result.unchanged)} unchanged")
    return result
