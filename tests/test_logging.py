"""Tests for the structured logging system (escrow_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from escrow_kernel.exceptions import DisputeRaised, StateConflictError
from escrow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state around each test, then restore the suite setup."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


def _parse_log(stream: StringIO) -> dict:
    return _parse_all_logs(stream)[0]


class TestStructuredFormatter:

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "escrow_kernel.test"
        assert "ts" in record

    def test_extra_fields_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        account_id = uuid4()
        get_logger("test").info("escrow_funded", extra={
            "account_id_extra": account_id,
            "amount": Decimal("100000.00"),
            "entry_no": 1,
        })

        record = _parse_log(stream)
        assert record["account_id_extra"] == str(account_id)
        assert record["amount"] == "100000.00"
        assert record["entry_no"] == 1

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(correlation_id="corr-1", actor_id="treasury")
        get_logger("test").info("ctx")

        record = _parse_log(stream)
        assert record["correlation_id"] == "corr-1"
        assert record["actor_id"] == "treasury"
        assert "account_id" not in record

    def test_extra_never_overrides_context(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(account_id="from-context")
        get_logger("test").info("clash", extra={"account_id": "from-extra"})

        assert _parse_log(stream)["account_id"] == "from-context"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise DisputeRaised("acct-1", "defective work", Decimal("50000.00"))
        except DisputeRaised:
            get_logger("test").exception("release_blocked")

        record = _parse_log(stream)
        assert record["exc_type"] == "DisputeRaised"
        assert record["exc_code"] == "DISPUTE_RAISED"
        assert record["exc_frozen_amount"] == "50000.00"
        assert record["exc_reason"] == "defective work"
        assert "traceback" in record

    def test_state_conflict_detail(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise StateConflictError("EscrowAccount", "acct-1", "completed", "release")
        except StateConflictError:
            get_logger("test").warning("release_rejected", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_current_state"] == "completed"
        assert record["exc_operation"] == "release"


class TestLogContext:

    def test_bind_stringifies_and_restores(self):
        account_id = uuid4()
        LogContext.set(actor_id="outer")

        with LogContext.bind(account_id=account_id, actor_id="inner"):
            assert LogContext.get_all() == {"account_id": str(account_id), "actor_id": "inner"}

        assert LogContext.get_all() == {"actor_id": "outer"}

    def test_bind_skips_none(self):
        with LogContext.bind(request_id=None, correlation_id="c"):
            assert LogContext.get_all() == {"correlation_id": "c"}

    def test_clear(self):
        LogContext.set(correlation_id="c", request_id="r")
        LogContext.clear()

        assert LogContext.get_all() == {}


class TestConfigureLogging:

    def test_idempotent(self):
        first, first_stream = _make_handler()
        second, second_stream = _make_handler()
        configure_logging(handler=first)
        configure_logging(handler=second)
        get_logger("test").info("once")

        assert len(_parse_all_logs(first_stream)) == 1
        assert second_stream.getvalue() == ""

    def test_level_filters(self):
        handler, stream = _make_handler()
        configure_logging(level=logging.WARNING, handler=handler)
        logger = get_logger("test")
        logger.info("dropped")
        logger.warning("kept")

        assert [r["message"] for r in _parse_all_logs(stream)] == ["kept"]

    def test_does_not_propagate_to_root(self):
        configure_logging(handler=logging.NullHandler())

        assert logging.getLogger("escrow_kernel").propagate is False


def test_unknown_context_field_rejected():
    with pytest.raises(TypeError, match="unknown log context field"):
        LogContext.set(tenant_id="t-1")
