"""JSON logging with trace/order/payment correlation fields.

Handlers bind the identifiers they learn (`order_id_ctx.set(...)`) and every
record emitted afterwards in that context carries them.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from gasmarket.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
order_id_ctx: ContextVar[str] = ContextVar("order_id", default="")
payment_id_ctx: ContextVar[str] = ContextVar("payment_id", default="")

QUIET_LOGGERS = ("aiokafka", "httpx", "uvicorn.access")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.trace_id = trace_id_ctx.get()
        record.order_id = order_id_ctx.get()
        record.payment_id = payment_id_ctx.get()
        return True


@contextmanager
def request_context(trace_id: str):
    """Bind a fresh trace id and clear order/payment ids for one unit of work."""

    tokens = (
        trace_id_ctx.set(trace_id),
        order_id_ctx.set(""),
        payment_id_ctx.set(""),
    )
    try:
        yield
    finally:
        for var, token in zip((trace_id_ctx, order_id_ctx, payment_id_ctx), tokens):
            var.reset(token)


def configure_logging() -> None:
    """Route all records through one stdout JSON handler."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(ContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(trace_id)s %(order_id)s %(payment_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("gasmarket")
