from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="AUTOHIDRO_", extra="ignore")

    app_name: str = "Auto Hidro Scheduler"
    timezone: str = "America/Santo_Domingo"

    # Relays (actuator ids are 1..relay_count)
    relay_count: int = Field(default=4, ge=1)

    # Condition polling
    condition_check_seconds: float = 60.0
    equality_tolerance: float = 0.5

    # Longest single sleep of a schedule trigger before the wall clock is read again
    trigger_resync_seconds: float = Field(default=60.0, gt=0)

    # Bound on every actuator/sensor/store call
    port_timeout_seconds: float = 5.0

    # In-memory transition history kept by the executor
    history_size: int = 500

    # Storage
    sqlite_path: str = Field(default="auto_hidro.db")

    # Mode: "sim" for development, "http" for a networked relay board
    mode: str = Field(default="sim")

    # HTTP relay board
    relay_board_url: str = "http://192.168.1.50"
    relay_board_timeout_seconds: float = 5.0

    # Simulated DHT-style sensor
    sim_temperature: float = 24.0
    sim_humidity: float = 60.0
    sim_noise: float = 0.3

    # Logging
    log_file: str = "auto_hidro.log"
    log_level: str = "INFO"

    # Housekeeping: purge old system_logs rows once a day
    log_retention_days: int = 30
    log_cleanup_hour: int = Field(default=2, ge=0, le=23)


settings = Settings()
