from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, List


class ScheduleIn(BaseModel):
    actuator_id: int = Field(ge=1)
    days_of_week: List[int] = Field(min_length=1)  # 0=Sunday .. 6=Saturday
    start_time: str  # "HH:MM"
    end_time: str    # "HH:MM"
    enabled: bool = True
    label: str = ""


class ConditionIn(BaseModel):
    actuator_id: int = Field(ge=1)
    metric: Literal["temperature", "humidity"]
    operator: Literal[">", "<", ">=", "<=", "=="]
    threshold: float
    action: Literal["activate", "deactivate"] = "activate"
    hold_seconds: int = Field(default=0, ge=0)
    enabled: bool = True


class ActuatorCommand(BaseModel):
    state: bool
    hold_seconds: int = Field(default=0, ge=0, le=24 * 3600)
    reason: str = "manual"
