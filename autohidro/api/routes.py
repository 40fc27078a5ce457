from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..core.config import settings
from ..core.timeutil import now_local
from ..domain.errors import ConfigurationError, PersistenceError, RuleLoadError
from ..domain.models import Condition, Schedule
from ..domain.schedule import parse_days
from ..services.scheduler import SchedulerService
from ..storage.sqlite_repo import SQLiteRuleStore
from .schemas import ActuatorCommand, ConditionIn, ScheduleIn

logger = logging.getLogger(__name__)

router = APIRouter()


# --- Dependency getters ---
# Placeholders that main.py replaces through app.dependency_overrides.
def get_scheduler() -> SchedulerService:  # overridden in main
    raise RuntimeError("Scheduler dependency not configured")

def get_repo() -> SQLiteRuleStore:  # overridden in main
    raise RuntimeError("Repo dependency not configured")


def _schedule_out(s: Schedule) -> dict:
    return {
        "id": s.id,
        "actuator_id": s.actuator_id,
        "days_of_week": sorted(s.days_of_week),
        "start_time": s.start_time,
        "end_time": s.end_time,
        "enabled": s.enabled,
        "label": s.label,
    }


def _to_schedule(schedule_id: int, req: ScheduleIn) -> Schedule:
    try:
        days = parse_days(req.days_of_week)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return Schedule(
        id=schedule_id,
        actuator_id=req.actuator_id,
        days_of_week=days,
        start_time=req.start_time,
        end_time=req.end_time,
        enabled=req.enabled,
        label=req.label,
    )


def _to_condition(condition_id: int, req: ConditionIn) -> Condition:
    return Condition(id=condition_id, **req.model_dump())


async def _apply(coro):
    """Await a rule mutation, mapping engine errors onto HTTP errors."""
    try:
        return await coro
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Rule {e.args[0]} not found")
    except RuleLoadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PersistenceError as e:
        logger.error("Rule store error: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status")
async def get_status(svc: SchedulerService = Depends(get_scheduler)):
    st = svc.get_status()
    return {
        "app": settings.app_name,
        "now_local": now_local().isoformat(),
        "running": st.running,
        "state": st.state.value,
        "schedule_count": st.schedule_count,
        "condition_count": st.condition_count,
        "trigger_count": st.trigger_count,
        "pending_timer_count": st.pending_timer_count,
        "pending": [
            {
                "actuator_id": p.actuator_id,
                "due_at": p.due_at.isoformat(),
                "origin_rule_id": p.origin_rule_id,
                "origin_kind": p.origin_kind,
            }
            for p in st.pending
        ],
    }


@router.post("/scheduler/start")
async def scheduler_start(svc: SchedulerService = Depends(get_scheduler)):
    await _apply(svc.init())
    return {"ok": True, "state": svc.state.value}


@router.post("/scheduler/stop")
async def scheduler_stop(svc: SchedulerService = Depends(get_scheduler)):
    await svc.stop()
    return {"ok": True, "state": svc.state.value}


@router.post("/scheduler/restart")
async def scheduler_restart(svc: SchedulerService = Depends(get_scheduler)):
    await _apply(svc.restart())
    return {"ok": True, "state": svc.state.value}


# --- Schedules ---

@router.get("/schedules")
async def list_schedules(repo: SQLiteRuleStore = Depends(get_repo)):
    return {"schedules": [_schedule_out(s) for s in await repo.load_schedules()]}


@router.post("/schedules")
async def create_schedule(req: ScheduleIn, svc: SchedulerService = Depends(get_scheduler)):
    created = await _apply(svc.add_schedule(_to_schedule(0, req)))
    return {"ok": True, "schedule": _schedule_out(created)}


@router.put("/schedules/{schedule_id}")
async def replace_schedule(schedule_id: int, req: ScheduleIn, svc: SchedulerService = Depends(get_scheduler)):
    updated = await _apply(svc.update_schedule(_to_schedule(schedule_id, req)))
    return {"ok": True, "schedule": _schedule_out(updated)}


@router.delete("/schedules/{schedule_id}")
async def remove_schedule(schedule_id: int, svc: SchedulerService = Depends(get_scheduler)):
    if not await _apply(svc.delete_schedule(schedule_id)):
        raise HTTPException(status_code=404, detail=f"Schedule {schedule_id} not found")
    return {"ok": True}


# --- Conditions ---

@router.get("/conditions")
async def list_conditions(repo: SQLiteRuleStore = Depends(get_repo)):
    return {"conditions": [asdict(c) for c in await repo.load_conditions()]}


@router.post("/conditions")
async def create_condition(req: ConditionIn, svc: SchedulerService = Depends(get_scheduler)):
    created = await _apply(svc.add_condition(_to_condition(0, req)))
    return {"ok": True, "condition": asdict(created)}


@router.put("/conditions/{condition_id}")
async def replace_condition(condition_id: int, req: ConditionIn, svc: SchedulerService = Depends(get_scheduler)):
    updated = await _apply(svc.update_condition(_to_condition(condition_id, req)))
    return {"ok": True, "condition": asdict(updated)}


@router.delete("/conditions/{condition_id}")
async def remove_condition(condition_id: int, svc: SchedulerService = Depends(get_scheduler)):
    if not await _apply(svc.delete_condition(condition_id)):
        raise HTTPException(status_code=404, detail=f"Condition {condition_id} not found")
    return {"ok": True}


# --- Actuators ---

@router.get("/actuators")
async def list_actuators(svc: SchedulerService = Depends(get_scheduler)):
    out = []
    for aid, st in svc.executor.snapshot().items():
        out.append({
            "actuator_id": aid,
            "state": st.level,
            "last_changed_at": st.last_changed_at.isoformat() if st.last_changed_at else None,
            "last_reason": st.last_reason,
        })
    return {"actuators": out}


@router.get("/actuators/history")
async def actuator_history(
    limit: int = 100, actuator_id: Optional[int] = None, repo: SQLiteRuleStore = Depends(get_repo)
):
    rows = await repo.query_relay_states(limit=max(1, min(limit, 5000)), actuator_id=actuator_id)
    return {
        "rows": [
            {"id": r.id, "ts_utc": r.ts_utc.isoformat(), "actuator_id": r.actuator_id, "state": r.level, "reason": r.reason}
            for r in rows
        ]
    }


@router.post("/actuators/{actuator_id}")
async def control_actuator(actuator_id: int, req: ActuatorCommand, svc: SchedulerService = Depends(get_scheduler)):
    if not svc.executor.running:
        raise HTTPException(status_code=409, detail="Scheduler is not running")
    ok = await _apply(svc.executor.manual(actuator_id, req.state, req.reason, req.hold_seconds))
    if not ok:
        raise HTTPException(status_code=502, detail=f"Actuator {actuator_id} did not accept the command")
    return {"ok": True, "actuator_id": actuator_id, "state": req.state}


@router.get("/transitions")
async def transitions(limit: int = 100, svc: SchedulerService = Depends(get_scheduler)):
    rows = svc.executor.history(limit=max(0, min(limit, 1000)))
    return {
        "rows": [
            {
                "ts_utc": t.ts_utc.isoformat(),
                "actuator_id": t.actuator_id,
                "state": t.level,
                "reason": t.reason,
                "ok": t.ok,
                "error": t.error,
            }
            for t in rows
        ]
    }


@router.get("/logs")
async def logs(limit: int = 100, level: Optional[str] = None, repo: SQLiteRuleStore = Depends(get_repo)):
    rows = await repo.query_logs(limit=max(1, min(limit, 5000)), level=level)
    return {
        "rows": [
            {"id": r.id, "ts_utc": r.ts_utc.isoformat(), "level": r.level, "message": r.message, "source": r.source}
            for r in rows
        ]
    }


@router.get("/sensors/current")
async def sensors_current(svc: SchedulerService = Depends(get_scheduler)):
    live = svc.evaluator.live
    return {
        "sample": live.last_sample,
        "ts_utc": live.last_sample_utc.isoformat() if live.last_sample_utc else None,
        "error": live.last_error,
        "consecutive_failures": live.consecutive_failures,
    }


@router.get("/sensors/history")
async def sensors_history(
    limit: int = 100,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    repo: SQLiteRuleStore = Depends(get_repo),
):
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="start and end must be given together")
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    rows = await repo.query_sensor_readings(limit=max(1, min(limit, 5000)), start=start, end=end)
    return {
        "readings": [
            {"id": r.id, "ts_utc": r.ts_utc.isoformat(), "temperature": r.temperature, "humidity": r.humidity}
            for r in rows
        ]
    }
