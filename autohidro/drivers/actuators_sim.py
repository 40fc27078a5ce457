from __future__ import annotations
import logging

logger = logging.getLogger(__name__)


class SimulatedRelayBank:
    """In-memory relay bank used when no hardware is attached."""

    def __init__(self, relay_count: int = 4) -> None:
        self._states = {aid: False for aid in range(1, relay_count + 1)}
        self._failing: set[int] = set()

    def fail(self, actuator_id: int, failing: bool = True) -> None:
        if failing:
            self._failing.add(actuator_id)
        else:
            self._failing.discard(actuator_id)

    def states(self) -> dict[int, bool]:
        return dict(self._states)

    async def get_output(self, actuator_id: int) -> bool:
        if actuator_id not in self._states:
            raise KeyError(f"Unknown relay {actuator_id}")
        return self._states[actuator_id]

    async def set_output(self, actuator_id: int, level: bool) -> bool:
        if actuator_id not in self._states or actuator_id in self._failing:
            logger.warning("RELAY %s set_output=%s refused", actuator_id, level)
            return False
        self._states[actuator_id] = bool(level)
        logger.info("RELAY %s set_output=%s", actuator_id, self._states[actuator_id])
        return True
