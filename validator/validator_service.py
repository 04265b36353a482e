import json
import logging
import math
import time
from numbers import Real
from typing import Mapping

from common.config import TENT_ID
from common.mqtt_utils import MQTT_HOST, MQTT_PORT, new_mqtt_client, topic
from common.errors import ValidationError
from common.models import AutonomousActionRequest, AutonomousActionResult, Decision, HardLimit
from executor.dispatch import InvokeFn, dispatch

logger = logging.getLogger("Validator")

# Absorbs float noise such as 0.75 - 0.6 = 0.15000000000000002
CHANGE_TOLERANCE = 1e-9


def _is_finite_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def _check(request: AutonomousActionRequest, hard_limits: Mapping[str, HardLimit]) -> HardLimit:
    limits = hard_limits.get(request.entity)
    if limits is None:
        raise ValidationError(f"Entity {request.entity} is not in the allowed list")

    if not (_is_finite_number(request.current_value) and _is_finite_number(request.new_value)):
        raise ValidationError("Invalid values: current and new value must be finite numbers")

    change = abs(request.new_value - request.current_value)
    if change > limits.max_change_per_invocation + CHANGE_TOLERANCE:
        raise ValidationError(
            f"Change of {change:.2f} exceeds max allowed {limits.max_change_per_invocation} per invocation"
        )

    if request.new_value < limits.min or request.new_value > limits.max:
        raise ValidationError(
            f"Value {request.new_value} is outside allowed range [{limits.min}, {limits.max}]"
        )
    return limits


def validate(request: AutonomousActionRequest, hard_limits: Mapping[str, HardLimit]) -> Decision:
    """
    Check one proposed numeric change against the hard-limit table.
    The first failing check decides the rejection reason.
    """
    try:
        _check(request, hard_limits)
    except ValidationError as e:
        logger.warning(f"Blocked {request.entity}: {e}")
        return Decision(accepted=False, reason=str(e))
    return Decision(accepted=True, reason="Within hard limits")


def execute_autonomous_action(
    request: AutonomousActionRequest,
    hard_limits: Mapping[str, HardLimit],
    invoke: InvokeFn,
) -> AutonomousActionResult:
    decision = validate(request, hard_limits)
    if not decision.accepted:
        return AutonomousActionResult(executed=False, reason=decision.reason, blocked=True)

    logger.info(f"Executing: {request.entity} = {request.new_value} ({request.reason})")
    result = dispatch(invoke, "number", "set_value", {"entity_id": request.entity, "value": request.new_value})
    return AutonomousActionResult(
        executed=result.success,
        reason="Applied successfully" if result.success else (result.error or "Unknown error"),
        blocked=False,
    )


def request_from_payload(payload: dict) -> AutonomousActionRequest:
    return AutonomousActionRequest(
        entity=str(payload.get("entity", "")),
        current_value=payload.get("currentValue", payload.get("current_value")),
        new_value=payload.get("newValue", payload.get("new_value")),
        reason=str(payload.get("reason", "")),
    )


class ValidatorService:
    """
    Receives externally proposed setpoint changes over MQTT, validates each
    against the hard limits and applies the accepted ones.
    """

    def __init__(self, hard_limits: Mapping[str, HardLimit], invoke: InvokeFn, tent_id: str = TENT_ID):
        self.logger = logging.getLogger("ValidatorService")
        self.hard_limits = hard_limits
        self.invoke = invoke
        self.proposal_topic = topic(tent_id, "proposals")
        self.decision_topic = topic(tent_id, "decisions")

        self.client = new_mqtt_client(f"validator-{tent_id}")
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message

        self.broker_host = MQTT_HOST
        self.broker_port = MQTT_PORT

    def run(self):
        self.logger.info(f"Connecting to MQTT {self.broker_host}...")
        while True:
            try:
                self.client.connect(self.broker_host, self.broker_port, 60)
                self.client.loop_forever()
            except OSError as e:
                self.logger.error(f"Connection failed: {e}. Retrying in 5s...")
                time.sleep(5)

    def on_connect(self, client, userdata, flags, reason_code, properties):
        client.subscribe(self.proposal_topic)
        self.logger.info(f"Subscribed to {self.proposal_topic}")

    def on_message(self, client, userdata, msg):
        try:
            payload = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            self.logger.error(f"Invalid JSON on {msg.topic}")
            return
        outcome = self.handle_proposal(payload)
        client.publish(self.decision_topic, json.dumps(outcome))

    def handle_proposal(self, payload: dict) -> dict:
        request = request_from_payload(payload)
        result = execute_autonomous_action(request, self.hard_limits, self.invoke)
        self.logger.info(f"Proposal {request.entity} -> {request.new_value}: {result.reason}")
        return {
            "entity": request.entity,
            "newValue": request.new_value,
            "executed": result.executed,
            "blocked": result.blocked,
            "reason": result.reason,
        }


if __name__ == "__main__":
    from common.config import HA_TIMEOUT_S, HA_TOKEN, HA_URL, fetch_system_config, load_hard_limits
    from common.ha_client import HomeAssistantClient

    logging.basicConfig(level=logging.INFO)
    system_config = fetch_system_config()
    ha = HomeAssistantClient(HA_URL, HA_TOKEN, timeout=HA_TIMEOUT_S)
    ValidatorService(load_hard_limits(system_config), ha.call_service).run()
