"""Tests for the activation executor."""

import asyncio
from datetime import timedelta

import pytest

from autohidro.domain.errors import ConfigurationError
from autohidro.services.executor import LOG_SOURCE, ActivationExecutor

from conftest import make_condition, make_schedule, settle


class TestRunSchedule:
    """Schedule firings switch on and arm the end-of-window auto-off."""

    async def test_on_then_auto_off_after_window(self, executor, actuator, store, sleeper, clock):
        """Monday 08:00-18:00 turns relay 1 on and off again ten hours later."""
        ok = await executor.run_schedule(make_schedule(start="08:00", end="18:00"))
        await settle()

        assert ok is True
        assert actuator.levels[1] is True
        pending = executor.pending()
        assert len(pending) == 1
        assert pending[0].due_at == clock.now + timedelta(hours=10)
        assert pending[0].origin_rule_id == 1
        assert sleeper.active == [36000]

        sleeper.release(36000)
        await settle()

        assert actuator.levels[1] is False
        assert actuator.calls == [(1, True), (1, False)]
        assert executor.pending_count == 0
        history = executor.history()
        assert [(h.level, h.reason) for h in history] == [
            (True, "schedule 1 start"),
            (False, "schedule 1 end"),
        ]
        assert len(store.logs_from(LOG_SOURCE)) == 2

    async def test_window_crossing_midnight(self, executor, sleeper):
        """22:00-02:00 holds for four hours."""
        await executor.run_schedule(make_schedule(start="22:00", end="02:00"))
        await settle()

        assert sleeper.active == [4 * 3600]

    async def test_state_records_reason_and_time(self, executor, clock):
        await executor.run_schedule(make_schedule(id=7, actuator_id=3))

        state = executor.snapshot()[3]
        assert state.level is True
        assert state.last_reason == "schedule 7 start"
        assert state.last_changed_at == clock.now


class TestPendingDeactivation:
    """At most one pending auto-off per actuator; the latest one wins."""

    async def test_rearm_supersedes_previous(self, executor, sleeper, clock):
        condition = make_condition(actuator_id=2, hold_seconds=900)

        await executor.run_condition(condition, 31.2)
        first_due = executor.pending()[0].due_at
        clock.advance(60)
        await executor.run_condition(condition, 31.5)
        await settle()

        pending = executor.pending()
        assert len(pending) == 1
        assert pending[0].due_at > first_due
        assert pending[0].due_at == clock.now + timedelta(seconds=900)
        assert sleeper.active == [900]

    async def test_schedule_and_condition_share_one_slot(self, executor, sleeper):
        """Two rules on the same actuator: last writer wins, nothing is stacked."""
        await executor.run_schedule(make_schedule(actuator_id=2, start="08:00", end="09:00"))
        await executor.run_condition(make_condition(id=5, actuator_id=2, hold_seconds=60), 35.0)
        await settle()

        pending = executor.pending()
        assert len(pending) == 1
        assert pending[0].origin_kind == "condition"
        assert pending[0].origin_rule_id == 5
        assert sleeper.active == [60]

    async def test_superseded_timer_never_fires(self, executor, actuator, sleeper):
        await executor.run_condition(make_condition(actuator_id=2, hold_seconds=900), 31.0)
        await executor.run_condition(make_condition(actuator_id=2, hold_seconds=1800), 31.0)
        await settle()

        sleeper.release(900)
        await settle()

        assert actuator.levels[2] is True
        assert (2, False) not in actuator.calls

    async def test_deactivate_clears_pending(self, executor, actuator, sleeper):
        await executor.run_condition(make_condition(actuator_id=2, hold_seconds=900), 31.0)
        off = make_condition(id=2, actuator_id=2, operator="<", threshold=20.0, action="deactivate")

        await executor.run_condition(off, 19.0)
        await settle()

        assert actuator.levels[2] is False
        assert executor.pending_count == 0
        assert sleeper.active == []

    async def test_zero_hold_is_indefinite(self, executor, sleeper):
        await executor.run_condition(make_condition(hold_seconds=0), 31.0)

        assert executor.pending_count == 0
        assert sleeper.active == []

    async def test_other_actuators_keep_their_timer(self, executor):
        await executor.run_condition(make_condition(actuator_id=2, hold_seconds=900), 31.0)
        await executor.run_condition(make_condition(id=2, actuator_id=3, hold_seconds=600), 31.0)

        assert sorted(p.actuator_id for p in executor.pending()) == [2, 3]


class TestActuationFailures:
    """Failed writes never advance state but are always logged."""

    async def test_rejected_write_keeps_state(self, executor, actuator, store):
        actuator.failing.add(1)

        ok = await executor.run_schedule(make_schedule(actuator_id=1))

        assert ok is False
        assert executor.snapshot()[1].level is False
        assert executor.snapshot()[1].last_reason is None
        assert executor.pending_count == 0
        entry = executor.history()[-1]
        assert entry.ok is False
        assert entry.level is True
        assert store.logs[-1][0] == "error"

    async def test_raising_write_is_contained(self, executor, actuator, store):
        actuator.raising.add(3)

        ok = await executor.run_condition(make_condition(actuator_id=3), 31.0)

        assert ok is False
        assert "relay bus error" in executor.history()[-1].error
        assert store.logs[-1][0] == "error"

    async def test_audit_failure_is_swallowed(self, executor, actuator, store):
        store.fail_log = True

        ok = await executor.run_schedule(make_schedule())

        assert ok is True
        assert actuator.levels[1] is True
        assert len(executor.history()) == 1

    async def test_unknown_actuator_rejected(self, executor):
        with pytest.raises(ConfigurationError):
            await executor.manual(9, True)


class TestSerialization:
    """Commands for one actuator are applied in order, others run alongside."""

    async def test_same_actuator_waits_other_proceeds(self, executor, actuator):
        actuator.gates[1] = asyncio.Event()

        first = asyncio.create_task(executor.manual(1, True))
        second = asyncio.create_task(executor.manual(1, False))
        other = asyncio.create_task(executor.manual(2, True))
        await settle()

        assert (1, True) in actuator.calls
        assert (2, True) in actuator.calls
        assert (1, False) not in actuator.calls
        assert other.done()

        actuator.gates[1].set()
        await asyncio.gather(first, second)

        assert [c for c in actuator.calls if c[0] == 1] == [(1, True), (1, False)]
        assert actuator.levels[1] is False


class TestLifecycle:
    async def test_stop_cancels_pending_and_keeps_level(self, actuator, store, sleeper, clock):
        ex = ActivationExecutor(actuator, store, relay_count=4, sleep=sleeper, clock=clock)
        await ex.start()
        await ex.run_schedule(make_schedule())

        await ex.stop()

        assert ex.pending_count == 0
        assert sleeper.active == []
        assert actuator.levels[1] is True
        assert actuator.calls == [(1, True)]

    async def test_commands_ignored_when_stopped(self, actuator, store, sleeper):
        ex = ActivationExecutor(actuator, store, relay_count=4, sleep=sleeper)

        ok = await ex.manual(1, True)

        assert ok is False
        assert actuator.calls == []

    async def test_queued_command_dropped_by_stop(self, actuator, store, sleeper):
        ex = ActivationExecutor(actuator, store, relay_count=4, sleep=sleeper)
        await ex.start()
        actuator.gates[1] = asyncio.Event()
        in_flight = asyncio.create_task(ex.manual(1, True))
        queued = asyncio.create_task(ex.manual(1, False))
        await settle()

        stopping = asyncio.create_task(ex.stop())
        await settle()
        actuator.gates[1].set()
        await stopping

        assert await in_flight is True
        assert await queued is False
        assert actuator.calls == [(1, True)]

    async def test_sync_from_port(self, actuator, store):
        actuator.levels[4] = True
        ex = ActivationExecutor(actuator, store, relay_count=4)

        await ex.sync_from_port()

        assert ex.snapshot()[4].level is True

    async def test_manual_hold_arms_auto_off(self, executor, sleeper):
        await executor.manual(4, True, reason="pump test", hold_seconds=30)
        await settle()

        assert executor.pending()[0].origin_kind == "manual"
        assert sleeper.active == [30]
