"""Structured JSON logging with request context fields."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from bgpay.common.config import settings

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
merchant_id_ctx: ContextVar[str] = ContextVar("merchant_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

_CONTEXT_FIELDS = ("service_name", "trace_id", "merchant_id", "payment_id")


class ContextFilter(logging.Filter):
    """Stamp every record with the service name and the current request identifiers."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.merchant_id = merchant_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        return True


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout; safe to call more than once."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            " ".join(f"%({name})s" for name in ("asctime", "levelname", "name", *_CONTEXT_FIELDS, "message")),
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    # httpx logs every request URL at INFO, including processor query strings.
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def request_context(trace_id: str):
    """Bind `trace_id` for one request and clear merchant/payment ids on exit."""

    tokens = (
        trace_id_ctx.set(trace_id),
        merchant_id_ctx.set(""),
        payment_id_ctx.set(""),
    )
    try:
        yield
    finally:
        for var, token in zip((trace_id_ctx, merchant_id_ctx, payment_id_ctx), tokens):
            var.reset(token)


logger = logging.getLogger("bgpay")
