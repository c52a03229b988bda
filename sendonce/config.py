"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 10
    database_max_overflow: int = 5

    # Redis (heartbeats, alert cooldowns, event bus)
    redis_url: str = "redis://localhost:6379/0"

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Send-once finalizer
    send_once_finalizer_enabled: bool = True
    send_once_batch_size: int = 50  # candidates per pass
    send_once_poll_interval_seconds: int = 300

    # Event-triggered finalizer
    event_listener_enabled: bool = True
    event_poll_interval_seconds: int = 15
    # False keeps the observed single-campaign evaluation on delivery events
    event_finalizer_group_aware: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
