"""Central environment-driven settings shared by the API and worker processes.

Each process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "gasmarket-api"
    environment: str = "production"
    log_level: str = "INFO"
    database_url: str
    api_key: str
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    idempotency_ttl_seconds: int = 86400
    currency: str = "KES"
    payment_code_ttl_seconds: int = 600
    payment_max_verification_attempts: int = 5
    # No SMS gateway is wired up yet, so codes are handed back to the client.
    payment_simulation_mode: bool = True
    notification_webhook_url: str | None = None
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


settings = CommonSettings()
