"""
Configuration for Gate Flow Service
"""
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""

    # Service info
    SERVICE_NAME: str = "gateflow-service"
    SERVICE_PORT: int = 8002

    # ==================== SIMULATION ====================
    SPECTATOR_COUNT: int = 1000
    SIMULATION_SPEED: float = 1.0
    SIMULATION_AUTOSTART: bool = False
    SIMULATION_SEED: Optional[int] = None

    # Driver interval = max(TICK_MIN_INTERVAL_MS, TICK_BASE_INTERVAL_MS / speed)
    TICK_BASE_INTERVAL_MS: int = 500
    TICK_MIN_INTERVAL_MS: int = 200
    SIMULATED_SECONDS_PER_TICK: int = 60

    # Cadences (in ticks)
    FORECAST_EVERY_TICKS: int = 10
    PREDICTION_ALERT_EVERY_TICKS: int = 15
    CRITICAL_ALERT_EVERY_TICKS: int = 20
    MAX_ALERTS: int = 10

    # ==================== FORECASTING ====================
    HISTORY_MAX_LENGTH: int = 1000
    SEQUENCE_LENGTH: int = 20
    MAX_GATES_PER_FORECAST: int = 6
    FORECAST_INIT_TIMEOUT_SECONDS: float = 3.0
    FORECAST_MODEL_ENABLED: bool = True
    REFINE_EVERY_PREDICTIONS: int = 100
    METRICS_EVERY_PREDICTIONS: int = 200

    # ==================== ROUTING ====================
    WALKING_SPEED: float = 5.0  # layout units per minute

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )


settings = Settings()
