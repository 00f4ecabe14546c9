"""Structured JSON logging.

Every record carries the service name plus whatever correlation ids are bound
in the current context: the HTTP trace id, the provider and provider event
being handled, and the payment link being worked on.
"""

import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from paylink.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
provider_ctx: ContextVar[str] = ContextVar("provider", default="")
event_id_ctx: ContextVar[str] = ContextVar("event_id", default="")
payment_link_id_ctx: ContextVar[str] = ContextVar("payment_link_id", default="")

_CONTEXT = {
    "trace_id": trace_id_ctx,
    "provider": provider_ctx,
    "event_id": event_id_ctx,
    "payment_link_id": payment_link_id_ctx,
}

# Provider secret key shapes; masked if one ever reaches a log message.
_SECRET_PATTERN = re.compile(r"\b(sk|rk)_(test|live)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        for name, var in _CONTEXT.items():
            setattr(record, name, var.get())
        return True


class SecretMaskFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _SECRET_PATTERN.sub("<redacted>", message)
        if masked != message:
            record.msg = masked
            record.args = ()
        return True


@contextmanager
def log_context(**values: str):
    """Bind correlation ids for the duration of a block."""

    tokens = [(_CONTEXT[name], _CONTEXT[name].set(value or "")) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def configure_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.addFilter(SecretMaskFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(provider)s %(event_id)s "
            "%(payment_link_id)s %(message)s"
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("paylink")
