from __future__ import annotations
import math
import random
from dataclasses import dataclass
from typing import Optional, Literal

from ..core.timeutil import now_utc


PatternType = Literal["manual", "sine"]


@dataclass
class PatternConfig:
    type: PatternType = "manual"
    temperature: float = 24.0
    humidity: float = 60.0
    temperature_amplitude: float = 4.0
    humidity_amplitude: float = 10.0
    period_s: float = 86400.0
    noise: float = 0.3


class SimulatedClimateSensor:
    """DHT-style temperature/humidity source for development."""

    sensor_id = "dht_sim_01"

    def __init__(self, temperature: float = 24.0, humidity: float = 60.0, noise: float = 0.3) -> None:
        self._enabled = True
        self._pattern = PatternConfig(temperature=temperature, humidity=humidity, noise=noise)
        self._t0 = now_utc()

    def enable(self) -> None:
        self._enabled = True

    def disable(self) -> None:
        self._enabled = False

    def set_manual(self, temperature: float, humidity: float) -> None:
        self._pattern.type = "manual"
        self._pattern.temperature = float(temperature)
        self._pattern.humidity = float(humidity)

    def set_pattern(self, cfg: PatternConfig) -> None:
        self._pattern = cfg

    def status(self) -> dict:
        return {
            "enabled": self._enabled,
            "pattern": self._pattern.__dict__,
        }

    def _pattern_value(self, t: float) -> tuple[float, float]:
        p = self._pattern
        if p.type == "sine":
            phase = 2 * math.pi * t / max(p.period_s, 1.0)
            return (
                p.temperature + p.temperature_amplitude * math.sin(phase),
                p.humidity - p.humidity_amplitude * math.sin(phase),
            )
        return p.temperature, p.humidity

    async def sample(self) -> Optional[dict[str, float]]:
        if not self._enabled:
            return None

        t = (now_utc() - self._t0).total_seconds()
        temperature, humidity = self._pattern_value(t)
        n = self._pattern.noise
        # DHT11 reports one decimal
        return {
            "temperature": round(temperature + random.uniform(-n, n), 1),
            "humidity": round(min(100.0, max(0.0, humidity + random.uniform(-n, n))), 1),
        }
