from __future__ import annotations
from datetime import datetime
from typing import Mapping, Optional, Protocol, runtime_checkable
from .models import Condition, LogRecord, RelayStateRecord, Schedule, SensorReading


@runtime_checkable
class ActuatorPort(Protocol):
    async def set_output(self, actuator_id: int, level: bool) -> bool:
        ...

    async def get_output(self, actuator_id: int) -> bool:
        ...


@runtime_checkable
class SensorPort(Protocol):
    async def sample(self) -> Optional[Mapping[str, float]]:
        ...


@runtime_checkable
class RuleStore(Protocol):
    async def load_schedules(self) -> list[Schedule]:
        ...

    async def load_conditions(self) -> list[Condition]:
        ...

    async def append_log(self, level: str, message: str, source: str) -> None:
        ...


@runtime_checkable
class RuleRepository(RuleStore, Protocol):
    async def save_schedule(self, schedule: Schedule) -> int:
        ...

    async def delete_schedule(self, schedule_id: int) -> bool:
        ...

    async def save_condition(self, condition: Condition) -> int:
        ...

    async def delete_condition(self, condition_id: int) -> bool:
        ...

    async def query_logs(self, limit: int, level: Optional[str] = None) -> list[LogRecord]:
        ...

    async def purge_logs(self, older_than: datetime) -> int:
        ...


@runtime_checkable
class HistoryStore(Protocol):
    """Sensor readings and confirmed relay transitions, kept for charts and audits."""

    async def save_sensor_reading(self, sample: Mapping[str, float], ts_utc: datetime) -> None:
        ...

    async def query_sensor_readings(
        self, limit: int, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[SensorReading]:
        ...

    async def save_relay_state(self, actuator_id: int, level: bool, reason: str, ts_utc: datetime) -> None:
        ...

    async def query_relay_states(self, limit: int, actuator_id: Optional[int] = None) -> list[RelayStateRecord]:
        ...
