from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping, Optional

from ..core.config import settings
from ..core.timeutil import now_utc
from ..domain.conditions import compare, read_metric, validate_condition
from ..domain.errors import ConfigurationError, SensingError
from ..domain.interfaces import HistoryStore, SensorPort
from ..domain.models import METRICS, Condition
from .executor import ActivationExecutor

logger = logging.getLogger(__name__)


@dataclass
class LiveSample:
    last_sample: Optional[dict[str, float]] = None
    last_sample_utc: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    ticks: int = 0
    skipped_ticks: int = 0
    last_fired: list[int] = field(default_factory=list)


class ConditionEvaluator:
    def __init__(
        self,
        sensor: SensorPort,
        executor: ActivationExecutor,
        poll_seconds: Optional[float] = None,
        tolerance: Optional[float] = None,
        relay_count: Optional[int] = None,
        port_timeout: Optional[float] = None,
        history: Optional[HistoryStore] = None,
    ) -> None:
        self._sensor = sensor
        self._executor = executor
        self._history = history
        self._poll_seconds = poll_seconds if poll_seconds is not None else settings.condition_check_seconds
        self._tolerance = tolerance if tolerance is not None else settings.equality_tolerance
        self._relay_count = relay_count or settings.relay_count
        self._timeout = port_timeout if port_timeout is not None else settings.port_timeout_seconds

        self._conditions: list[Condition] = []
        self.rejected: list[tuple[Condition, ConfigurationError]] = []

        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()

        self.live = LiveSample()

    @property
    def condition_count(self) -> int:
        return len(self._conditions)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def load(self, conditions: Iterable[Condition]) -> int:
        """Replace the evaluated set with every enabled, valid condition."""
        accepted: list[Condition] = []
        rejected: list[tuple[Condition, ConfigurationError]] = []
        for condition in conditions:
            if not condition.enabled:
                continue
            try:
                validate_condition(condition, self._relay_count)
            except ConfigurationError as e:
                logger.error("Condition %s rejected: %s", condition.id, e)
                rejected.append((condition, e))
                continue
            accepted.append(condition)
        self._conditions = accepted
        self.rejected = rejected
        return len(accepted)

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="condition_loop")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def sample(self) -> Mapping[str, float]:
        """One bounded sensor read. Raises SensingError when there is nothing usable."""
        try:
            data = await asyncio.wait_for(self._sensor.sample(), self._timeout)
        except asyncio.TimeoutError:
            raise SensingError(f"Sensor sample timed out after {self._timeout:g}s") from None
        except Exception as e:
            raise SensingError(f"Sensor sample failed: {e}") from e
        if not data:
            raise SensingError("Sensor returned no data")
        if not isinstance(data, Mapping):
            raise SensingError(f"Sensor returned {type(data).__name__}, expected a mapping")
        # A corrupt reading poisons the whole cycle, not just the rules on that metric
        for metric in METRICS:
            if metric in data:
                read_metric(data, metric)
        return data

    async def tick(self) -> int:
        """
        Sample once and evaluate every condition against that one sample.
        Returns the number of conditions that fired. A failed sample skips the
        whole cycle without touching the executor.
        """
        self.live.ticks += 1
        try:
            data = await self.sample()
        except SensingError as e:
            self.live.consecutive_failures += 1
            self.live.skipped_ticks += 1
            self.live.last_error = str(e)
            logger.warning("Condition cycle skipped (%d in a row): %s", self.live.consecutive_failures, e)
            return 0

        if self.live.consecutive_failures:
            logger.info("Sensor recovered after %d failed samples", self.live.consecutive_failures)
        self.live.consecutive_failures = 0
        self.live.last_error = None
        self.live.last_sample = dict(data)
        self.live.last_sample_utc = now_utc()
        await self._record(data, self.live.last_sample_utc)

        fired: list[int] = []
        for condition in list(self._conditions):
            try:
                value = read_metric(data, condition.metric)
                if not compare(condition.operator, value, condition.threshold, self._tolerance):
                    continue
                logger.info(
                    "Condition %s met: %s (value %.2f)", condition.id, condition.describe(), value
                )
                await self._executor.run_condition(condition, value)
                fired.append(condition.id)
            except SensingError as e:
                logger.warning("Condition %s skipped: %s", condition.id, e)
            except Exception:
                logger.exception("Condition %s evaluation failed", condition.id)

        self.live.last_fired = fired
        return len(fired)

    async def _record(self, data: Mapping[str, float], ts: datetime) -> None:
        if self._history is None:
            return
        try:
            await asyncio.wait_for(self._history.save_sensor_reading(data, ts), self._timeout)
        except Exception:
            logger.warning("Sensor reading could not be stored", exc_info=True)

    async def _run(self) -> None:
        logger.info(
            "Condition loop started (poll_seconds=%s conditions=%d)",
            self._poll_seconds,
            len(self._conditions),
        )
        while not self._stop.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Condition loop error: %s", e)

            # sleep with cancellation awareness
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Condition loop stopped")
