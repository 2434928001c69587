"""Orchestrator configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_prefix": "INCIDENT_"}

    # Redis
    redis_url: str = "redis://redis:6379/0"
    command_stream: str = "incident:commands"
    consumer_group: str = "incident-workers"
    consumer_name: str = "worker-1"
    history_prefix: str = "incident:history:"
    history_index_key: str = "incident:services"
    dedup_window_seconds: int = 86400

    # Escalation
    escalation_timeout_seconds: float = 30.0
    history_retry_seconds: float = 1.0

    # Notification retry policy
    notify_initial_interval_seconds: float = 1.0
    notify_backoff_coefficient: float = 2.0
    notify_maximum_interval_seconds: float = 60.0
    notify_maximum_attempts: int = 5
    notify_attempt_timeout_seconds: float = 30.0
    notify_webhook_url: str = ""

    # Telemetry
    log_level: str = "INFO"
    otlp_endpoint: str = ""

    # Server
    host: str = "0.0.0.0"
    port: int = 8200

    # CLI
    api_url: str = "http://localhost:8200"


settings = Settings()
