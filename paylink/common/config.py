"""Central environment-driven settings for the payment link service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "paylink"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    public_base_url: str = "http://localhost:8000"
    # Comma separated Fernet keys; the first one encrypts, all of them decrypt.
    encryption_keys: str | None = None
    provider_timeout_seconds: float = 10.0
    rate_limit_per_minute: int = 30
    stripe_webhook_secret: str | None = None
    paypal_webhook_secret: str | None = None
    paypal_webhook_id: str = ""
    square_signature_key: str | None = None
    square_notification_url: str = ""
    paypay_webhook_secret: str | None = None
    fincode_webhook_secret: str | None = None
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def webhook_secrets(self) -> dict[str, str | None]:
        """Per-provider webhook signing secrets keyed by provider name."""

        return {
            "stripe": self.stripe_webhook_secret,
            "paypal": self.paypal_webhook_secret,
            "square": self.square_signature_key,
            "paypay": self.paypay_webhook_secret,
            "fincode": self.fincode_webhook_secret,
        }


settings = CommonSettings()
