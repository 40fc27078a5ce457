from __future__ import annotations
import asyncio
import logging
from dataclasses import replace
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Optional

from ..core.config import settings
from ..core.timeutil import now_local, now_utc
from ..domain.conditions import validate_condition
from ..domain.errors import ConfigurationError, RuleLoadError
from ..domain.interfaces import ActuatorPort, HistoryStore, RuleRepository, RuleStore, SensorPort
from ..domain.models import Condition, Schedule, SchedulerStatus, ServiceState
from ..domain.schedule import next_fire_time, seconds_until, validate_schedule
from .evaluator import ConditionEvaluator
from .executor import ActivationExecutor
from .triggers import TriggerEngine

logger = logging.getLogger(__name__)

LOG_SOURCE = "Scheduler"


class SchedulerService:
    """
    Lifecycle owner of the engine.

    The rule set is only ever applied as a whole: init() loads it, stop()
    tears every derived timer down, restart() does both under one lock.
    Rule edits go through the store and then restart().
    """

    def __init__(
        self,
        actuator: ActuatorPort,
        sensor: SensorPort,
        store: RuleStore,
        relay_count: Optional[int] = None,
        poll_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = now_local,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        housekeeping: bool = True,
        trigger_resync_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._relay_count = relay_count or settings.relay_count
        self._clock = clock
        self._sleep = sleep
        self._housekeeping_enabled = housekeeping

        self.executor = ActivationExecutor(actuator, store, relay_count=self._relay_count, sleep=sleep)
        self.triggers = TriggerEngine(
            self.executor, relay_count=self._relay_count, clock=clock, sleep=sleep,
            resync_seconds=trigger_resync_seconds,
        )
        self.evaluator = ConditionEvaluator(
            sensor, self.executor, poll_seconds=poll_seconds, relay_count=self._relay_count,
            history=store if isinstance(store, HistoryStore) else None,
        )

        self._state = ServiceState.STOPPED
        self._schedules: list[Schedule] = []
        self._conditions: list[Condition] = []
        self._housekeeping: Optional[asyncio.Task] = None
        self._lifecycle = asyncio.Lock()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is ServiceState.RUNNING

    def schedules(self) -> list[Schedule]:
        return list(self._schedules)

    def conditions(self) -> list[Condition]:
        return list(self._conditions)

    # --- lifecycle ---

    async def init(self) -> None:
        async with self._lifecycle:
            await self._init()

    async def start(self) -> None:
        await self.init()

    async def stop(self) -> None:
        async with self._lifecycle:
            await self._stop()

    async def restart(self) -> None:
        async with self._lifecycle:
            logger.info("Restarting scheduler")
            await self._stop()
            await self._init()

    async def _init(self) -> None:
        if self._state is not ServiceState.STOPPED:
            logger.warning("init() ignored, scheduler is %s", self._state.value)
            return
        self._state = ServiceState.INITIALIZING
        try:
            schedules, conditions = await self._load_rules()
        except RuleLoadError:
            self._state = ServiceState.STOPPED
            raise

        self._schedules = schedules
        self._conditions = conditions

        await self.executor.start()
        await self.executor.sync_from_port()
        trigger_count = self.triggers.register(schedules)
        condition_count = self.evaluator.load(conditions)
        await self.evaluator.start()
        if self._housekeeping_enabled and isinstance(self._store, RuleRepository):
            self._housekeeping = asyncio.create_task(self._log_cleanup_loop(), name="log_cleanup")

        self._state = ServiceState.RUNNING
        logger.info(
            "Scheduler running: %d schedules (%d triggers), %d conditions",
            len(schedules), trigger_count, condition_count,
        )
        for schedule, err in self.triggers.rejected:
            await self._log("warning", f"Schedule {schedule.id} rejected: {err}")
        for condition, err in self.evaluator.rejected:
            await self._log("warning", f"Condition {condition.id} rejected: {err}")
        await self._log("info", "Scheduler initialized")

    async def _stop(self) -> None:
        if self._state is not ServiceState.RUNNING:
            return
        self._state = ServiceState.STOPPING
        # Executor first: its epoch bump drops whatever the timers queued before this point
        await self.executor.stop()
        await self.triggers.cancel_all()
        await self.evaluator.stop()
        if self._housekeeping:
            self._housekeeping.cancel()
            await asyncio.gather(self._housekeeping, return_exceptions=True)
            self._housekeeping = None
        self._state = ServiceState.STOPPED
        logger.info("Scheduler stopped")
        await self._log("info", "Scheduler stopped")

    async def _load_rules(self) -> tuple[list[Schedule], list[Condition]]:
        try:
            schedules = await self._store.load_schedules()
            conditions = await self._store.load_conditions()
        except Exception as e:
            logger.error("Could not load rules: %s", e)
            raise RuleLoadError(f"Could not load rules: {e}") from e
        return list(schedules), list(conditions)

    async def _log(self, level: str, message: str) -> None:
        try:
            await self._store.append_log(level, message, LOG_SOURCE)
        except Exception:
            logger.warning("System log write failed: %s", message, exc_info=True)

    # --- status ---

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self.running,
            state=self._state,
            schedule_count=self.triggers.schedule_count,
            condition_count=self.evaluator.condition_count,
            trigger_count=self.triggers.trigger_count,
            pending_timer_count=self.executor.pending_count,
            pending=self.executor.pending(),
        )

    # --- rule CRUD (always culminates in restart) ---

    def _repository(self) -> RuleRepository:
        if not isinstance(self._store, RuleRepository):
            raise ConfigurationError("The configured rule store does not support editing rules")
        return self._store

    async def add_schedule(self, schedule: Schedule) -> Schedule:
        validate_schedule(schedule, self._relay_count)
        new_id = await self._repository().save_schedule(replace(schedule, id=0))
        await self.restart()
        return replace(schedule, id=new_id)

    async def update_schedule(self, schedule: Schedule) -> Schedule:
        validate_schedule(schedule, self._relay_count)
        await self._repository().save_schedule(schedule)
        await self.restart()
        return schedule

    async def delete_schedule(self, schedule_id: int) -> bool:
        deleted = await self._repository().delete_schedule(schedule_id)
        if deleted:
            await self.restart()
        return deleted

    async def add_condition(self, condition: Condition) -> Condition:
        validate_condition(condition, self._relay_count)
        new_id = await self._repository().save_condition(replace(condition, id=0))
        await self.restart()
        return replace(condition, id=new_id)

    async def update_condition(self, condition: Condition) -> Condition:
        validate_condition(condition, self._relay_count)
        await self._repository().save_condition(condition)
        await self.restart()
        return condition

    async def delete_condition(self, condition_id: int) -> bool:
        deleted = await self._repository().delete_condition(condition_id)
        if deleted:
            await self.restart()
        return deleted

    # --- housekeeping ---

    async def purge_old_logs(self) -> int:
        cutoff = now_utc() - timedelta(days=settings.log_retention_days)
        removed = await self._repository().purge_logs(cutoff)
        logger.info("Purged %d system log rows older than %s", removed, cutoff.isoformat())
        await self._log("info", f"Log cleanup removed {removed} rows")
        return removed

    async def _log_cleanup_loop(self) -> None:
        at = time(hour=settings.log_cleanup_hour)
        while True:
            now = self._clock()
            candidates = [next_fire_time(day, at, now) for day in range(7)]
            await self._sleep(seconds_until(min(candidates), now))
            try:
                await self.purge_old_logs()
            except Exception:
                logger.warning("Log cleanup failed", exc_info=True)
