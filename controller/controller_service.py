import json
import logging
import threading
import time
from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Optional

from analyzer.analyzer_service import analyze
from common.config import (
    CONTROL_INTERVAL_S,
    DEFAULT_COOLDOWN_MS,
    INTENSITY_COOLDOWN_MS,
    RATE_LIMIT_COOLDOWN_MS,
    RATE_LIMIT_ERROR_CODES,
    RATE_LIMIT_PATTERNS,
    TENT_ID,
    VENDOR_COOLDOWN_MS,
    VPD_SETTINGS_COOLDOWN_MS,
    active_stage_id,
    cooldown_table,
    entity_ids,
    get_config,
    get_stage,
    is_daytime,
    ownership_map,
    target_profile_for_stage,
    vendor_devices,
)
from common.errors import ConfigError
from common.models import CycleReport
from common.mqtt_utils import MQTT_HOST, MQTT_PORT, new_mqtt_client, topic
from controller.vpd_sync import sync_vpd_settings
from executor.cooldown import CooldownStore
from executor.dispatch import InvokeFn
from executor.executor_service import execute
from monitor.monitor_service import GetStateFn, Monitor, parse_reading
from planner.planner_service import plan


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {(k.value if isinstance(k, Enum) else k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def report_to_dict(report: CycleReport) -> dict:
    return _jsonable(asdict(report))


class EnvironmentController:
    """
    One closed-loop controller per tent.

    Each cycle reads the sensors, analyzes them against the active stage,
    plans and executes. Cycles never overlap: a cycle requested while one
    is running returns None.
    """

    def __init__(self, system_config: dict, invoke: InvokeFn, get_state: GetStateFn,
                 tent_id: str = TENT_ID, cooldowns: Optional[CooldownStore] = None):
        self.logger = logging.getLogger("EnvironmentController")
        self.system_config = system_config
        self.invoke = invoke
        self.get_state = get_state
        self.tent_id = tent_id
        if self.stage_id and get_stage(system_config, self.stage_id) is None:
            raise ConfigError(f"Unknown stage: {self.stage_id}")

        self.entities = entity_ids(system_config)
        self.ownership = ownership_map(system_config)
        self.monitor = Monitor(get_state, self.entities)
        self.cooldowns = cooldowns or CooldownStore(
            device_cooldowns_ms=cooldown_table(system_config),
            default_ms=get_config("default_cooldown_ms", system_config, default=DEFAULT_COOLDOWN_MS),
            intensity_ms=get_config("intensity_cooldown_ms", system_config, default=INTENSITY_COOLDOWN_MS),
            extended_ms=get_config("rate_limit_cooldown_ms", system_config, default=RATE_LIMIT_COOLDOWN_MS),
            vendor_ms=get_config("vendor_cooldown_ms", system_config, default=VENDOR_COOLDOWN_MS),
        )
        self.vendor_devices = vendor_devices(system_config)
        self.rate_limit_codes = tuple(
            str(c) for c in get_config("rate_limit_error_codes", system_config, default=RATE_LIMIT_ERROR_CODES)
        )
        self.rate_limit_patterns = tuple(
            get_config("rate_limit_patterns", system_config, default=RATE_LIMIT_PATTERNS)
        )

        self.enabled = True
        self.last_report: Optional[CycleReport] = None
        self._cycle_lock = threading.Lock()

        self.trigger_topic = topic(tent_id, "trigger")
        self.report_topic = topic(tent_id, "cycle")
        self.client = None

    @property
    def stage_id(self) -> Optional[str]:
        return active_stage_id(self.system_config)

    @property
    def control_interval_s(self) -> float:
        return float(get_config("control_interval_s", self.system_config, self.stage_id,
                                default=CONTROL_INTERVAL_S))

    def enable(self):
        self.enabled = True
        self.logger.info("Controller enabled")

    def disable(self):
        self.enabled = False
        self.logger.info("Controller disabled")

    def is_enabled(self) -> bool:
        return self.enabled

    def read_value(self, entity_id: str) -> Optional[float]:
        state = self.get_state(entity_id)
        return parse_reading(state.get("state")) if state else None

    def run_cycle(self, now: Optional[float] = None, trigger: str = "timer") -> Optional[CycleReport]:
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.warning(f"Cycle already in progress, ignoring {trigger} trigger")
            return None
        try:
            report = self._cycle(time.time() if now is None else now, trigger)
        finally:
            self._cycle_lock.release()
        self.last_report = report
        return report

    def trigger(self, now: Optional[float] = None) -> Optional[CycleReport]:
        """Manual cycle, e.g. from the MQTT trigger topic."""
        return self.run_cycle(now=now, trigger="manual")

    def _cycle(self, now: float, trigger: str) -> CycleReport:
        if not self.enabled:
            self.logger.info("Controller disabled, skipping cycle")
            return CycleReport(started_at=now, trigger=trigger, status="disabled")

        stage = get_stage(self.system_config, self.stage_id)
        is_day = is_daytime(stage, datetime.fromtimestamp(now))
        target = target_profile_for_stage(stage, is_day)

        snapshot = self.monitor.read_snapshot()
        if snapshot.is_empty():
            self.logger.warning("All sensor readings unknown, skipping cycle")
            return CycleReport(started_at=now, trigger=trigger, status="no_data")

        if get_config("sync_vpd_settings", self.system_config, self.stage_id, default=False):
            sync_vpd_settings(stage, self.invoke, self.read_value, self.cooldowns, now, self.entities,
                              get_config("vpd_settings_cooldown_ms", self.system_config,
                                         default=VPD_SETTINGS_COOLDOWN_MS))

        problems = analyze(snapshot, target)
        if not problems:
            self.logger.info(f"Environment optimal ({'day' if is_day else 'night'} targets)")
            return CycleReport(started_at=now, trigger=trigger, status="optimal")

        actuators = self.monitor.read_actuator_states()
        cycle_plan = plan(problems, snapshot, target, actuators, self.ownership)
        for rec in cycle_plan.recommendations:
            self.logger.info(f"Recommendation for external app: {rec.reason}")

        results = execute(
            cycle_plan.actions,
            self.invoke,
            self.monitor.read_actuator_state,
            self.cooldowns,
            now=now,
            is_enabled=self.is_enabled,
            entities=self.entities,
            rate_limit_codes=self.rate_limit_codes,
            rate_limit_patterns=self.rate_limit_patterns,
            vendor_devices=self.vendor_devices,
        )
        return CycleReport(started_at=now, trigger=trigger, status="executed",
                           problems=problems, plan=cycle_plan, results=results)

    def publish(self, report: Optional[CycleReport]):
        if report is None or self.client is None:
            return
        self.client.publish(self.report_topic, json.dumps(report_to_dict(report), default=str))

    def on_connect(self, client, userdata, flags, reason_code, properties):
        client.subscribe(self.trigger_topic)
        self.logger.info(f"Subscribed to {self.trigger_topic}")

    def on_message(self, client, userdata, msg):
        self.logger.info(f"Manual trigger received on {msg.topic}")
        self.publish(self.trigger())

    def run(self):
        self.client = new_mqtt_client(f"controller-{self.tent_id}")
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        self.logger.info(f"Connecting to MQTT {MQTT_HOST}...")
        self.client.connect_async(MQTT_HOST, MQTT_PORT, 60)
        self.client.loop_start()

        self.logger.info(f"Controller started for stage {self.stage_id}, interval {self.control_interval_s:.0f}s")
        while True:
            self.publish(self.run_cycle())
            time.sleep(self.control_interval_s)


if __name__ == "__main__":
    from common.config import HA_TIMEOUT_S, HA_TOKEN, HA_URL, fetch_system_config
    from common.ha_client import HomeAssistantClient

    logging.basicConfig(level=logging.INFO)
    ha = HomeAssistantClient(HA_URL, HA_TOKEN, timeout=HA_TIMEOUT_S)
    EnvironmentController(fetch_system_config(), ha.call_service, ha.get_state).run()
