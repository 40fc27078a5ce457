from __future__ import annotations
import asyncio
import logging
from datetime import datetime, time
from typing import Awaitable, Callable, Iterable, Optional

from ..core.config import settings
from ..core.timeutil import now_local
from ..domain.errors import ConfigurationError
from ..domain.models import Schedule
from ..domain.schedule import next_fire_time, seconds_until, validate_schedule
from .executor import ActivationExecutor

logger = logging.getLogger(__name__)


class TriggerEngine:
    """One recurring weekly trigger per (schedule, day), anchored at the schedule's start time."""

    def __init__(
        self,
        executor: ActivationExecutor,
        relay_count: Optional[int] = None,
        clock: Callable[[], datetime] = now_local,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        resync_seconds: Optional[float] = None,
    ) -> None:
        self._executor = executor
        self._relay_count = relay_count or settings.relay_count
        self._clock = clock
        self._sleep = sleep
        self._resync_seconds = resync_seconds or settings.trigger_resync_seconds

        self._tasks: dict[tuple[int, int], asyncio.Task] = {}
        self._next_fire: dict[tuple[int, int], datetime] = {}
        self.rejected: list[tuple[Schedule, ConfigurationError]] = []

    @property
    def trigger_count(self) -> int:
        return len(self._tasks)

    @property
    def schedule_count(self) -> int:
        return len({schedule_id for schedule_id, _ in self._tasks})

    def next_fires(self) -> dict[tuple[int, int], datetime]:
        return dict(self._next_fire)

    def register(self, schedules: Iterable[Schedule]) -> int:
        """Arm triggers for every enabled, valid schedule. Invalid ones are logged and skipped."""
        for schedule in schedules:
            if not schedule.enabled:
                continue
            try:
                start, _ = validate_schedule(schedule, self._relay_count)
            except ConfigurationError as e:
                logger.error("Schedule %s rejected: %s", schedule.id, e)
                self.rejected.append((schedule, e))
                continue

            for day in sorted(schedule.days_of_week):
                key = (schedule.id, day)
                if key in self._tasks:
                    logger.warning("Schedule %s day %d already registered, skipping duplicate", schedule.id, day)
                    continue
                self._tasks[key] = asyncio.create_task(
                    self._run(schedule, day, start), name=f"schedule_{schedule.id}_day_{day}"
                )
            logger.info(
                "Schedule %s armed for actuator %d days=%s %s",
                schedule.id, schedule.actuator_id, sorted(schedule.days_of_week), schedule.window_label,
            )
        return len(self._tasks)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._next_fire.clear()
        self.rejected = []

    async def _run(self, schedule: Schedule, day: int, start: time) -> None:
        key = (schedule.id, day)
        fire_at = next_fire_time(day, start, self._clock())
        while True:
            self._next_fire[key] = fire_at
            await self._wait_until(fire_at)
            logger.info("Schedule %s firing (day %d, %s)", schedule.id, day, fire_at.isoformat())
            try:
                await self._executor.run_schedule(schedule)
            except Exception:
                logger.exception("Schedule %s fire failed", schedule.id)
            fire_at = next_fire_time(day, start, max(fire_at, self._clock()))

    async def _wait_until(self, fire_at: datetime) -> None:
        # Re-read the clock at least every resync_seconds
        while True:
            remaining = seconds_until(fire_at, self._clock())
            if remaining <= 0:
                return
            await self._sleep(min(remaining, self._resync_seconds))
