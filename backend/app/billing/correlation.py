"""Correlation IDs and log configuration for billing runs.

Every log line emitted while a run is in progress carries the run's
correlation ID, so the effects of one run can be pulled out of the logs
after the fact. The same ID is stored on payment and invoice rows and sent
to Stripe as metadata.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s]: %(message)s"

_correlation_id: ContextVar[str | None] = ContextVar("billing_correlation_id", default=None)


def new_correlation_id(prefix: str = "run") -> str:
    """Generate an opaque run identifier such as ``cron_3f9a1c0b2d4e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> str | None:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind ``correlation_id`` to all log records emitted inside the block."""
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """Stamp ``record.correlation_id`` on every record ("-" outside a run)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure the root logger with the correlation-aware format.

    Safe to call more than once; the filter is only attached once per handler.
    """
    logging.basicConfig(level=level, format=LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CorrelationIdFilter) for f in handler.filters):
            handler.addFilter(CorrelationIdFilter())
