from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.log import configure_logging

from .api.routes import router as api_router
import autohidro.api.routes as routes_module

from .domain.interfaces import ActuatorPort
from .drivers.actuators_sim import SimulatedRelayBank
from .drivers.actuator_http import HttpRelayBoard
from .drivers.sensors_sim import SimulatedClimateSensor
from .domain.errors import RuleLoadError
from .services.scheduler import SchedulerService
from .storage.sqlite_repo import SQLiteRuleStore


logger = logging.getLogger(__name__)


def build_actuator() -> ActuatorPort:
    if settings.mode.lower() == "http":
        return HttpRelayBoard(
            base_url=settings.relay_board_url,
            timeout=settings.relay_board_timeout_seconds,
        )
    # default to sim
    return SimulatedRelayBank(relay_count=settings.relay_count)


# --- Singletons ---
repo = SQLiteRuleStore(settings.sqlite_path)
sensor = SimulatedClimateSensor(
    temperature=settings.sim_temperature,
    humidity=settings.sim_humidity,
    noise=settings.sim_noise,
)
scheduler: SchedulerService | None = None


def get_scheduler() -> SchedulerService:
    assert scheduler is not None
    return scheduler


def get_repo() -> SQLiteRuleStore:
    return repo


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s (mode=%s, relays=%d)", settings.app_name, settings.mode, settings.relay_count)

    await repo.init()

    global scheduler
    scheduler = SchedulerService(actuator=build_actuator(), sensor=sensor, store=repo)
    try:
        await scheduler.init()
    except RuleLoadError:
        # Keep serving the API so the operator can inspect and retry via /api/scheduler/start
        logger.exception("Scheduler failed to start")

    try:
        yield
    finally:
        if scheduler:
            await scheduler.stop()

        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# Make the dependency functions in routes resolve to the real ones
app.dependency_overrides[routes_module.get_scheduler] = get_scheduler
app.dependency_overrides[routes_module.get_repo] = get_repo

app.include_router(api_router, prefix="/api")
