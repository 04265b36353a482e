import pytest

from common.models import ActuatorState, Device, SensorSnapshot, TargetProfile


class FakeInvoke:
    """Records service calls; replays queued responses, then succeeds."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses)

    def __call__(self, domain, service, data):
        self.calls.append((domain, service, data))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return {"success": True}


class FakeStates:
    """In-memory actuator states keyed by device."""

    def __init__(self, states=None):
        self.states = dict(states or {})
        self.reads = []

    def __call__(self, device):
        self.reads.append(device)
        return self.states.get(device)


@pytest.fixture
def target():
    return TargetProfile(
        temp_min=75.0, temp_max=82.0, temp_optimal=78.0,
        humidity_min=55.0, humidity_max=75.0, humidity_optimal=70.0,
        vpd_min=0.4, vpd_max=0.8, vpd_optimal=0.6,
    )


@pytest.fixture
def dry_hot_snapshot():
    return SensorSnapshot(temperature=84.0, humidity=58.0, vpd=0.85)


@pytest.fixture
def actuators():
    return {
        Device.HUMIDIFIER: ActuatorState(Device.HUMIDIFIER, mode="Off", current_power=0),
        Device.EXHAUST_FAN: ActuatorState(Device.EXHAUST_FAN, mode="On", current_power=5),
        Device.HEATER: ActuatorState(Device.HEATER, mode="heat", setpoint=80),
        Device.LIGHT: ActuatorState(Device.LIGHT, mode="on"),
    }


@pytest.fixture
def invoke():
    return FakeInvoke()


@pytest.fixture
def read_state(actuators):
    return FakeStates(actuators)
