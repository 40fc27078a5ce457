"""Shared fakes and fixtures for the engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from autohidro.domain.models import Condition, Schedule
from autohidro.services.executor import ActivationExecutor


# Monday
MONDAY_0700 = datetime(2024, 1, 1, 7, 0, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 50) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeActuator:
    def __init__(self, relay_count: int = 4):
        self.levels = {aid: False for aid in range(1, relay_count + 1)}
        self.calls: list[tuple[int, bool]] = []
        self.failing: set[int] = set()
        self.raising: set[int] = set()
        self.gates: dict[int, asyncio.Event] = {}

    async def set_output(self, actuator_id: int, level: bool) -> bool:
        self.calls.append((actuator_id, level))
        gate = self.gates.get(actuator_id)
        if gate is not None:
            await gate.wait()
        if actuator_id in self.raising:
            raise OSError("relay bus error")
        if actuator_id in self.failing:
            return False
        self.levels[actuator_id] = level
        return True

    async def get_output(self, actuator_id: int) -> bool:
        return self.levels[actuator_id]


class FakeSensor:
    def __init__(self, *samples):
        self.samples = list(samples)
        self.current = None
        self.calls = 0

    async def sample(self):
        self.calls += 1
        if self.samples:
            item = self.samples.pop(0)
        else:
            item = self.current
        if isinstance(item, Exception):
            raise item
        return item


class FakeStore:
    def __init__(self, schedules=None, conditions=None):
        self.schedules: list[Schedule] = list(schedules or [])
        self.conditions: list[Condition] = list(conditions or [])
        self.logs: list[tuple[str, str, str]] = []
        self.fail_load = False
        self.fail_log = False

    async def load_schedules(self):
        if self.fail_load:
            raise ConnectionError("store unreachable")
        return list(self.schedules)

    async def load_conditions(self):
        if self.fail_load:
            raise ConnectionError("store unreachable")
        return list(self.conditions)

    async def append_log(self, level, message, source):
        if self.fail_log:
            raise IOError("disk full")
        self.logs.append((level, message, source))

    def logs_from(self, source):
        return [entry for entry in self.logs if entry[2] == source]


class FakeSleeper:
    """Stands in for asyncio.sleep; every call blocks until released by the test."""

    def __init__(self):
        self.calls: list[tuple[float, asyncio.Future]] = []

    async def __call__(self, delay: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self.calls.append((delay, fut))
        await fut

    @property
    def active(self) -> list[float]:
        return [delay for delay, fut in self.calls if not fut.done()]

    def release(self, delay=None) -> int:
        released = 0
        for d, fut in self.calls:
            if fut.done():
                continue
            if delay is None or d == delay:
                fut.set_result(None)
                released += 1
        return released


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_schedule(id=1, actuator_id=1, days=(1,), start="08:00", end="18:00", enabled=True):
    return Schedule(
        id=id,
        actuator_id=actuator_id,
        days_of_week=frozenset(days),
        start_time=start,
        end_time=end,
        enabled=enabled,
    )


def make_condition(id=1, actuator_id=2, metric="temperature", operator=">", threshold=30.0,
                   action="activate", hold_seconds=900, enabled=True):
    return Condition(
        id=id,
        actuator_id=actuator_id,
        metric=metric,
        operator=operator,
        threshold=threshold,
        action=action,
        hold_seconds=hold_seconds,
        enabled=enabled,
    )


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sleeper():
    return FakeSleeper()


@pytest.fixture
def clock():
    return FakeClock(MONDAY_0700)


@pytest.fixture
async def executor(actuator, store, sleeper, clock):
    ex = ActivationExecutor(actuator, store, relay_count=4, sleep=sleeper, clock=clock, port_timeout=1.0)
    await ex.start()
    yield ex
    await ex.stop()
