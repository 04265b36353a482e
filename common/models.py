from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional


class Device(str, Enum):
    HUMIDIFIER = "humidifier"
    EXHAUST_FAN = "exhaust_fan"
    HEATER = "heater"
    LIGHT = "light"


class ProblemType(str, Enum):
    VPD_HIGH = "VPD_HIGH"
    VPD_LOW = "VPD_LOW"
    TEMP_HIGH = "TEMP_HIGH"
    TEMP_LOW = "TEMP_LOW"
    HUMIDITY_LOW = "HUMIDITY_LOW"
    HUMIDITY_HIGH = "HUMIDITY_HIGH"


class Ownership(str, Enum):
    CONTROLLER_OWNED = "controller"
    EXTERNAL_APP_OWNED = "external_app"


@dataclass(frozen=True)
class SensorSnapshot:
    # None = reading unavailable, never the same as 0.0
    temperature: Optional[float]   # °F
    humidity: Optional[float]      # %RH, 0-100
    vpd: Optional[float]           # kPa

    def is_empty(self) -> bool:
        return self.temperature is None and self.humidity is None and self.vpd is None


@dataclass(frozen=True)
class TargetProfile:
    temp_min: float
    temp_max: float
    temp_optimal: float
    humidity_min: float
    humidity_max: float
    humidity_optimal: float
    vpd_min: float
    vpd_max: float
    vpd_optimal: float


@dataclass(frozen=True)
class ActuatorState:
    device: Device
    mode: Optional[str] = None             # 'On', 'Off', 'VPD', 'Auto', 'heat', 'on'...
    current_power: Optional[float] = None  # 0-10 for AC Infinity devices
    setpoint: Optional[float] = None       # heater target temperature


@dataclass
class Problem:
    type: ProblemType
    severity: int                  # one of 0, 25, 50, 75, 100
    current_value: float
    target_value: float
    delta: float                   # distance past the violated boundary
    description: str


@dataclass
class Action:
    device: Device
    verb: str                      # 'set_max_intensity', 'reduce_power', ...
    params: Dict[str, Any]         # to_power / to_temp / target_intensity
    reason: str
    priority: int                  # lower = more urgent
    ownership: Ownership
    problem: Optional[ProblemType] = None

    @property
    def key(self) -> str:
        return f"{self.device.value}_{self.verb}"


@dataclass
class Plan:
    actions: List[Action] = field(default_factory=list)

    @property
    def executable(self) -> List[Action]:
        return [a for a in self.actions if a.ownership == Ownership.CONTROLLER_OWNED]

    @property
    def recommendations(self) -> List[Action]:
        return [a for a in self.actions if a.ownership == Ownership.EXTERNAL_APP_OWNED]


@dataclass
class CooldownEntry:
    key: str
    last_invoked_at: float         # epoch seconds
    duration_ms: int

    def expires_at(self) -> float:
        return self.last_invoked_at + self.duration_ms / 1000.0

    def is_active(self, now: float) -> bool:
        return now - self.last_invoked_at < self.duration_ms / 1000.0


@dataclass
class DispatchResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class ExecutionResult:
    action: Action
    success: bool
    skipped: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    reason: Optional[str] = None
    data: Any = None


@dataclass(frozen=True)
class HardLimit:
    entity: str
    min: float
    max: float
    max_change_per_invocation: float


@dataclass(frozen=True)
class AutonomousActionRequest:
    entity: str
    current_value: Any
    new_value: Any
    reason: str = ""


@dataclass(frozen=True)
class Decision:
    accepted: bool
    reason: str


@dataclass
class AutonomousActionResult:
    executed: bool
    reason: str
    blocked: bool


@dataclass
class CycleReport:
    started_at: float
    trigger: str                   # 'timer' or 'manual'
    status: str                    # 'optimal', 'executed', 'no_data', 'disabled'
    problems: List[Problem] = field(default_factory=list)
    plan: Plan = field(default_factory=Plan)
    results: List[ExecutionResult] = field(default_factory=list)


@dataclass
class VpdSyncResult:
    success: bool
    skipped: bool = False
    reason: Optional[str] = None
    changes: List[Dict[str, Any]] = field(default_factory=list)
    unchanged: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
