from __future__ import annotations
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.errors import ActuationError, ConfigurationError
from ..domain.interfaces import ActuatorPort, HistoryStore, RuleStore
from ..domain.models import (
    ActuatorState,
    Condition,
    PendingDeactivation,
    Schedule,
    TransitionLogEntry,
)
from ..domain.schedule import parse_hhmm, schedule_duration_seconds

logger = logging.getLogger(__name__)

LOG_SOURCE = "ActivationExecutor"

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class _ArmedTimer:
    entry: PendingDeactivation
    task: Optional[asyncio.Task] = None


@dataclass
class _Command:
    actuator_id: int
    level: bool
    reason: str
    epoch: int
    done: asyncio.Future
    hold_seconds: int = 0
    origin_rule_id: int = 0
    origin_kind: str = "manual"
    hold_reason: str = ""
    expiring: Optional[_ArmedTimer] = None


class ActivationExecutor:
    """
    Sole writer of actuator state.

    Every transition is posted as a command to the queue of its actuator and
    applied by that actuator's worker task, so transitions for one actuator
    never interleave while different actuators switch in parallel.

    At most one PendingDeactivation exists per actuator: arming a new one
    cancels the previous one (last writer wins). A deactivate command always
    clears the pending auto-off for its actuator.

    Commands carry the epoch they were created in; stop() bumps the epoch so
    anything created before it is dropped, even when already queued.
    """

    def __init__(
        self,
        actuator: ActuatorPort,
        store: RuleStore,
        relay_count: Optional[int] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = now_utc,
        port_timeout: Optional[float] = None,
        history_size: Optional[int] = None,
    ) -> None:
        self._actuator = actuator
        self._store = store
        self._relay_count = relay_count or settings.relay_count
        self._sleep = sleep
        self._clock = clock
        self._timeout = port_timeout if port_timeout is not None else settings.port_timeout_seconds

        self._states: dict[int, ActuatorState] = {
            aid: ActuatorState(actuator_id=aid) for aid in self.actuator_ids
        }
        self._pending: dict[int, _ArmedTimer] = {}
        self._history: deque[TransitionLogEntry] = deque(maxlen=history_size or settings.history_size)

        self._queues: dict[int, asyncio.Queue] = {}
        self._workers: dict[int, asyncio.Task] = {}
        self._epoch = 0
        self._running = False

    # --- lifecycle ---

    @property
    def actuator_ids(self) -> range:
        return range(1, self._relay_count + 1)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def epoch(self) -> int:
        return self._epoch

    async def start(self) -> None:
        if self._running:
            return
        for aid in self.actuator_ids:
            queue: asyncio.Queue = asyncio.Queue()
            self._queues[aid] = queue
            self._workers[aid] = asyncio.create_task(self._worker(aid, queue), name=f"actuator_{aid}")
        self._running = True
        logger.info("Executor started (epoch=%d, actuators=%d)", self._epoch, self._relay_count)

    async def stop(self) -> None:
        """Cancel every pending auto-off and drop every queued command. Levels are left as they are."""
        if not self._running:
            return
        self._running = False
        self._epoch += 1

        for armed in self._pending.values():
            if armed.task:
                armed.task.cancel()
        timers = [a.task for a in self._pending.values() if a.task]
        self._pending.clear()

        # Sentinel lets an in-flight write finish; older commands behind it are dropped by epoch
        for queue in self._queues.values():
            queue.put_nowait(None)
        await asyncio.gather(*timers, *self._workers.values(), return_exceptions=True)

        self._queues.clear()
        self._workers.clear()
        logger.info("Executor stopped (epoch now %d)", self._epoch)

    async def sync_from_port(self) -> None:
        """Seed in-memory levels from the actuator port. Unreadable actuators keep their last known level."""
        for aid in self.actuator_ids:
            try:
                level = await asyncio.wait_for(self._actuator.get_output(aid), self._timeout)
            except Exception:
                logger.warning("Could not read actuator %d, keeping last known level", aid, exc_info=True)
                continue
            self._states[aid].level = bool(level)

    # --- entry points ---

    async def run_schedule(self, schedule: Schedule) -> bool:
        duration = schedule_duration_seconds(parse_hhmm(schedule.start_time), parse_hhmm(schedule.end_time))
        return await self._submit(
            schedule.actuator_id,
            True,
            f"schedule {schedule.id} start",
            hold_seconds=duration,
            origin_rule_id=schedule.id,
            origin_kind="schedule",
            hold_reason=f"schedule {schedule.id} end",
        )

    async def run_condition(self, condition: Condition, value: float) -> bool:
        reason = f"condition {condition.id}: {condition.describe()} (value {value:.1f})"
        if condition.action == "deactivate":
            return await self._submit(condition.actuator_id, False, reason)
        return await self._submit(
            condition.actuator_id,
            True,
            reason,
            hold_seconds=condition.hold_seconds,
            origin_rule_id=condition.id,
            origin_kind="condition",
            hold_reason=f"condition {condition.id} hold expired",
        )

    async def manual(self, actuator_id: int, level: bool, reason: str = "manual", hold_seconds: int = 0) -> bool:
        if hold_seconds < 0:
            raise ConfigurationError("hold_seconds must be >= 0")
        return await self._submit(
            actuator_id,
            level,
            reason,
            hold_seconds=hold_seconds if level else 0,
            origin_kind="manual",
            hold_reason=f"{reason} hold expired",
        )

    # --- snapshots ---

    def snapshot(self) -> dict[int, ActuatorState]:
        return {aid: replace(state) for aid, state in self._states.items()}

    def pending(self) -> list[PendingDeactivation]:
        return [armed.entry for armed in self._pending.values()]

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def history(self, limit: Optional[int] = None) -> list[TransitionLogEntry]:
        items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    # --- internals ---

    def _check_actuator(self, actuator_id: int) -> None:
        if actuator_id not in self.actuator_ids:
            raise ConfigurationError(f"Unknown actuator {actuator_id}, expected 1-{self._relay_count}")

    async def _submit(self, actuator_id: int, level: bool, reason: str, **kwargs) -> bool:
        self._check_actuator(actuator_id)
        if not self._running:
            logger.warning("Executor not running, ignoring actuator %d -> %s (%s)", actuator_id, level, reason)
            return False
        cmd = _Command(
            actuator_id=actuator_id,
            level=level,
            reason=reason,
            epoch=self._epoch,
            done=asyncio.get_running_loop().create_future(),
            **kwargs,
        )
        self._queues[actuator_id].put_nowait(cmd)
        return await cmd.done

    async def _worker(self, actuator_id: int, queue: asyncio.Queue) -> None:
        while True:
            cmd: Optional[_Command] = await queue.get()
            if cmd is None:
                break
            result = False
            try:
                if cmd.epoch != self._epoch:
                    logger.debug("Dropping stale command for actuator %d (%s)", actuator_id, cmd.reason)
                elif cmd.expiring is not None and self._pending.get(actuator_id) is not cmd.expiring:
                    logger.debug("Dropping superseded auto-off for actuator %d", actuator_id)
                else:
                    result = await self._apply(cmd)
            except Exception:
                logger.exception("Actuator %d command failed (%s)", actuator_id, cmd.reason)
            if not cmd.done.done():
                cmd.done.set_result(result)

        # Anything left behind the sentinel belongs to a stopped epoch
        while not queue.empty():
            leftover = queue.get_nowait()
            if leftover is not None and not leftover.done.done():
                leftover.done.set_result(False)

    async def _apply(self, cmd: _Command) -> bool:
        aid = cmd.actuator_id
        if cmd.expiring is not None:
            self._pending.pop(aid, None)
        elif not cmd.level:
            self._cancel_pending(aid)

        ok = await self._write(aid, cmd.level, cmd.reason)

        if ok and cmd.level and cmd.hold_seconds > 0 and cmd.epoch == self._epoch:
            self._arm(aid, cmd.hold_seconds, cmd.origin_rule_id, cmd.origin_kind, cmd.hold_reason)
        return ok

    async def _write(self, actuator_id: int, level: bool, reason: str) -> bool:
        label = "ON" if level else "OFF"
        error: Optional[str] = None
        try:
            ok = bool(await asyncio.wait_for(self._actuator.set_output(actuator_id, level), self._timeout))
            if not ok:
                error = "actuator rejected the write"
        except asyncio.TimeoutError:
            ok, error = False, f"timed out after {self._timeout:g}s"
        except Exception as e:
            ok, error = False, str(e) or type(e).__name__

        ts = self._clock()
        if ok:
            state = self._states[actuator_id]
            state.level = level
            state.last_changed_at = ts
            state.last_reason = reason

        self._history.append(
            TransitionLogEntry(ts_utc=ts, actuator_id=actuator_id, level=level, reason=reason, ok=ok, error=error)
        )

        if ok:
            logger.info("Actuator %d %s (%s)", actuator_id, label, reason)
            await self._audit("info", f"Actuator {actuator_id} {label}: {reason}")
            await self._record_state(actuator_id, level, reason, ts)
        else:
            err = ActuationError(f"Actuator {actuator_id} {label} failed: {error}")
            logger.error("%s (%s)", err, reason)
            await self._audit("error", f"{err} ({reason})")
        return ok

    async def _audit(self, level: str, message: str) -> None:
        try:
            await asyncio.wait_for(self._store.append_log(level, message, LOG_SOURCE), self._timeout)
        except Exception:
            logger.warning("Audit log write failed: %s", message, exc_info=True)

    async def _record_state(self, actuator_id: int, level: bool, reason: str, ts: datetime) -> None:
        if not isinstance(self._store, HistoryStore):
            return
        try:
            await asyncio.wait_for(self._store.save_relay_state(actuator_id, level, reason, ts), self._timeout)
        except Exception:
            logger.warning("Relay state write failed for actuator %d", actuator_id, exc_info=True)

    def _arm(self, actuator_id: int, seconds: int, origin_rule_id: int, origin_kind: str, reason: str) -> None:
        self._cancel_pending(actuator_id)
        entry = PendingDeactivation(
            actuator_id=actuator_id,
            due_at=self._clock() + timedelta(seconds=seconds),
            origin_rule_id=origin_rule_id,
            origin_kind=origin_kind,
            reason=reason,
        )
        armed = _ArmedTimer(entry=entry)
        armed.task = asyncio.create_task(
            self._expire(armed, seconds, self._epoch), name=f"auto_off_{actuator_id}"
        )
        self._pending[actuator_id] = armed
        logger.info("Actuator %d auto-off armed for %s (%s)", actuator_id, entry.due_at.isoformat(), reason)

    def _cancel_pending(self, actuator_id: int) -> None:
        armed = self._pending.pop(actuator_id, None)
        if armed and armed.task:
            armed.task.cancel()
            logger.info("Actuator %d auto-off cleared (%s)", actuator_id, armed.entry.reason)

    async def _expire(self, armed: _ArmedTimer, seconds: int, epoch: int) -> None:
        await self._sleep(seconds)
        if epoch != self._epoch or not self._running:
            return
        aid = armed.entry.actuator_id
        cmd = _Command(
            actuator_id=aid,
            level=False,
            reason=armed.entry.reason,
            epoch=epoch,
            done=asyncio.get_running_loop().create_future(),
            expiring=armed,
        )
        self._queues[aid].put_nowait(cmd)
        await cmd.done
