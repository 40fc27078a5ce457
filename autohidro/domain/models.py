from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Literal, Optional


Operator = Literal[">", "<", ">=", "<=", "=="]
ConditionAction = Literal["activate", "deactivate"]

OPERATORS: tuple[str, ...] = (">", "<", ">=", "<=", "==")
ACTIONS: tuple[str, ...] = ("activate", "deactivate")
METRICS: tuple[str, ...] = ("temperature", "humidity")


@dataclass(frozen=True)
class Schedule:
    id: int
    actuator_id: int
    days_of_week: frozenset[int]  # 0=Sunday .. 6=Saturday
    start_time: str  # "HH:MM", validated at registration
    end_time: str
    enabled: bool = True
    label: str = ""

    @property
    def window_label(self) -> str:
        return self.label or f"{self.start_time}-{self.end_time}"


@dataclass(frozen=True)
class Condition:
    id: int
    actuator_id: int
    metric: str
    operator: Operator
    threshold: float
    action: ConditionAction = "activate"
    hold_seconds: int = 0  # 0 = stay on until something else switches it
    enabled: bool = True

    def describe(self) -> str:
        return f"{self.metric} {self.operator} {self.threshold:g}"


@dataclass
class ActuatorState:
    actuator_id: int
    level: bool = False
    last_changed_at: Optional[datetime] = None
    last_reason: Optional[str] = None


@dataclass(frozen=True)
class PendingDeactivation:
    actuator_id: int
    due_at: datetime
    origin_rule_id: int
    origin_kind: str  # "schedule" | "condition" | "manual"
    reason: str


@dataclass(frozen=True)
class TransitionLogEntry:
    ts_utc: datetime
    actuator_id: int
    level: bool
    reason: str
    ok: bool = True
    error: Optional[str] = None


@dataclass(frozen=True)
class LogRecord:
    id: int
    ts_utc: datetime
    level: str
    message: str
    source: Optional[str]


@dataclass(frozen=True)
class SensorReading:
    id: int
    ts_utc: datetime
    temperature: Optional[float]
    humidity: Optional[float]


@dataclass(frozen=True)
class RelayStateRecord:
    id: int
    ts_utc: datetime
    actuator_id: int
    level: bool
    reason: Optional[str]


class ServiceState(str, Enum):
    STOPPED = "STOPPED"
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool
    state: ServiceState
    schedule_count: int
    condition_count: int
    trigger_count: int
    pending_timer_count: int
    pending: list[PendingDeactivation] = field(default_factory=list)
