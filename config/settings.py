"""
Application settings and environment configuration.

Purpose:
- Centralize all config (JWT, fleet data, tracking thresholds, logging)
- Load from environment variables for 12-factor app compliance
- Provide sensible defaults for local development
"""
import os
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # API Configuration
    API_TITLE: str = "School Bus Tracking API"
    API_VERSION: str = "0.3"
    DEBUG: bool = os.getenv("DEBUG", "True").lower() == "true"

    # JWT Secret: read from .env (no hard-coded secret)
    JWT_SECRET: str = os.getenv("JWT_SECRET", "change_me_to_secure_value")
    JWT_ALGORITHM: str = "HS256"

    # Logging: Values: DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Fleet directory fixture (buses, routes, stops, children)
    FLEET_DATA_PATH: str = os.getenv("FLEET_DATA_PATH", "data/fleet.json")
    # Timezone used to turn "HH:MM" stop schedules into datetimes
    SERVICE_TIMEZONE: str = os.getenv("SERVICE_TIMEZONE", "UTC")

    # Tracking policy
    GEOFENCE_RADIUS_M: float = 100.0
    ARRIVAL_DEBOUNCE_SAMPLES: int = 2
    IDLE_TIMEOUT_MINUTES: float = 10.0
    DELAY_THRESHOLD_MINUTES: float = 5.0
    SPEED_SMOOTHING_FACTOR: float = 0.3
    # 20 mph, used when the bus is crawling or stopped
    DEFAULT_SPEED_KMPH: float = 32.0
    MIN_MOVING_SPEED_KMPH: float = 8.0

    # Fan-out: per-connection outbound buffer before messages are dropped
    OUTBOUND_QUEUE_SIZE: int = 100

    # Finished journeys kept for the history endpoint, in service days
    HISTORY_RETENTION_DAYS: int = 7

    # Base URL used by tools/gps_simulator.py
    TRACKING_API_URL: str = os.getenv("TRACKING_API_URL", "http://localhost:8000")

    class Config:
        env_file = ".env"  # Load from .env file if present
        extra = "allow"

# Global settings instance
settings = Settings()


class TrackingPolicy(BaseModel):
    """Tunable thresholds for journey tracking, kept out of the classification code."""
    geofence_radius_m: float = 100.0
    arrival_debounce_samples: int = Field(2, ge=1)
    idle_timeout_sec: float = Field(600.0, gt=0)
    delay_threshold_minutes: float = 5.0
    speed_smoothing_factor: float = Field(0.3, gt=0, le=1)
    default_speed_kmph: float = Field(32.0, gt=0)
    min_moving_speed_kmph: float = 8.0
    outbound_queue_size: int = Field(100, ge=1)
    history_retention_days: int = Field(7, ge=1)

    @classmethod
    def from_settings(cls, s: Settings) -> "TrackingPolicy":
        return cls(
            geofence_radius_m=s.GEOFENCE_RADIUS_M,
            arrival_debounce_samples=s.ARRIVAL_DEBOUNCE_SAMPLES,
            idle_timeout_sec=s.IDLE_TIMEOUT_MINUTES * 60.0,
            delay_threshold_minutes=s.DELAY_THRESHOLD_MINUTES,
            speed_smoothing_factor=s.SPEED_SMOOTHING_FACTOR,
            default_speed_kmph=s.DEFAULT_SPEED_KMPH,
            min_moving_speed_kmph=s.MIN_MOVING_SPEED_KMPH,
            outbound_queue_size=s.OUTBOUND_QUEUE_SIZE,
            history_retention_days=s.HISTORY_RETENTION_DAYS,
        )
