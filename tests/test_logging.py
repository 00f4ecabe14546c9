import logging

from paylink.common.config import CommonSettings
from paylink.common.logging import ContextFilter, SecretMaskFilter, log_context, payment_link_id_ctx, provider_ctx
from paylink.common.startup import config_snapshot, providers_missing_webhook_secret


def _record(msg, *args):
    return logging.LogRecord("paylink", logging.INFO, __file__, 1, msg, args, None)


def test_secret_shaped_values_are_masked():
    record = _record("calling stripe with key=%s hook=%s", "sk_live_abc123", "whsec_xyz")
    SecretMaskFilter().filter(record)
    message = record.getMessage()
    assert "sk_live_abc123" not in message
    assert "whsec_xyz" not in message
    assert message.count("<redacted>") == 2


def test_log_context_binds_and_restores():
    with log_context(provider="paypay", payment_link_id="pl1"):
        record = _record("inside")
        ContextFilter().filter(record)
        assert (record.provider, record.payment_link_id) == ("paypay", "pl1")
    assert provider_ctx.get() == ""
    assert payment_link_id_ctx.get() == ""


def test_config_snapshot_redacts_secrets():
    cfg = CommonSettings(
        postgres_dsn="postgresql+psycopg://u:p@db/paylink",
        api_key="secret-api-key",
        encryption_keys="k1,k2",
        stripe_webhook_secret="whsec_1",
    )
    snapshot = config_snapshot(cfg)
    assert snapshot["postgres_dsn"] == "<redacted>"
    assert snapshot["api_key"] == "<redacted>"
    assert snapshot["encryption_keys"] == "<redacted>"
    assert snapshot["stripe_webhook_secret"] == "<redacted>"
    assert snapshot["paypay_webhook_secret"] == "<unset>"
    assert snapshot["rate_limit_per_minute"] == 30


def test_providers_missing_webhook_config():
    cfg = CommonSettings(
        postgres_dsn="sqlite://",
        api_key="k",
        stripe_webhook_secret="whsec_1",
        paypal_webhook_secret="pp",
        square_signature_key="sq",
        paypay_webhook_secret="py",
        fincode_webhook_secret="fc",
    )
    assert providers_missing_webhook_secret(cfg) == ["paypal", "square"]
