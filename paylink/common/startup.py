"""Startup checks: a redacted config snapshot and webhook readiness per provider."""

from paylink.common.config import CommonSettings
from paylink.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def config_snapshot(cfg: CommonSettings) -> dict[str, object]:
    snapshot: dict[str, object] = {}
    for name, value in cfg.model_dump().items():
        if value in (None, ""):
            snapshot[name] = "<unset>"
        elif any(marker in name for marker in SECRET_MARKERS):
            snapshot[name] = "<redacted>"
        else:
            snapshot[name] = value
    return snapshot


def providers_missing_webhook_secret(cfg: CommonSettings) -> list[str]:
    missing = [provider for provider, secret in cfg.webhook_secrets().items() if not secret]
    if "paypal" not in missing and not cfg.paypal_webhook_id:
        missing.append("paypal")
    if "square" not in missing and not cfg.square_notification_url:
        missing.append("square")
    return sorted(missing)


def log_startup_config(cfg: CommonSettings) -> None:
    """Log the effective config; providers without webhook secrets will answer 401."""

    logger.info("startup_config=%s", config_snapshot(cfg))
    for provider in providers_missing_webhook_secret(cfg):
        logger.warning("webhooks disabled provider=%s reason=missing_signing_config", provider)
