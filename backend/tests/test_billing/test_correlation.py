"""Tests for correlation IDs on log records."""

import logging

from app.billing.correlation import (
    CorrelationIdFilter,
    correlation_scope,
    get_correlation_id,
    new_correlation_id,
)


def _record() -> logging.LogRecord:
    return logging.LogRecord("app.test", logging.INFO, __file__, 1, "hello", None, None)


def test_new_correlation_id_uses_prefix():
    cid = new_correlation_id("cron")
    assert cid.startswith("cron_")
    assert len(cid) == len("cron_") + 12
    assert new_correlation_id("cron") != cid


def test_scope_binds_and_restores():
    assert get_correlation_id() is None
    with correlation_scope("run_abc") as cid:
        assert cid == "run_abc"
        assert get_correlation_id() == "run_abc"
        with correlation_scope("run_inner"):
            assert get_correlation_id() == "run_inner"
        assert get_correlation_id() == "run_abc"
    assert get_correlation_id() is None


def test_filter_stamps_records():
    log_filter = CorrelationIdFilter()

    outside = _record()
    assert log_filter.filter(outside) is True
    assert outside.correlation_id == "-"

    with correlation_scope("manual_123"):
        inside = _record()
        log_filter.filter(inside)
    assert inside.correlation_id == "manual_123"
