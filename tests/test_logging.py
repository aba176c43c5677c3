"""
Structured logging: JSON line shape, request-scoped context, exception
fields and logger setup.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from approval_kernel.domain.approval import ApprovalStatus
from approval_kernel.exceptions import InvalidStateError
from approval_kernel.logging_config import (
    CONTEXT_FIELDS,
    LogContext,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _isolated_logging():
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def lines():
    """Configure logging into a buffer; return a reader of the parsed lines."""
    stream = StringIO()
    configure_logging(stream=stream, level=logging.DEBUG)

    def _read() -> list[dict]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    return _read


# ---------------------------------------------------------------------------
# Line shape
# ---------------------------------------------------------------------------


class TestLineShape:
    def test_envelope(self, lines):
        get_logger("services.approval").info("approval_request_created")

        [record] = lines()
        assert record["level"] == "INFO"
        assert record["message"] == "approval_request_created"
        assert record["logger"] == "approval_kernel.services.approval"
        assert datetime.fromisoformat(record["ts"]).tzinfo is not None

    def test_extra_values_serialised(self, lines):
        request_id = uuid4()
        get_logger("test").info(
            "approval_decision_recorded",
            extra={
                "request_pk": request_id,
                "status": ApprovalStatus.APPROVED,
                "value": Decimal("1250.50"),
                "approvers": ("analyst.ana", "analyst.bruno"),
                "channels": frozenset({"in_app", "email"}),
                "at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            },
        )

        [record] = lines()
        assert record["request_pk"] == str(request_id)
        assert record["status"] == "approved"
        assert record["value"] == "1250.50"
        assert record["approvers"] == ["analyst.ana", "analyst.bruno"]
        assert record["channels"] == ["email", "in_app"]
        assert record["at"] == "2024-01-01T00:00:00+00:00"

    def test_below_level_dropped(self):
        stream = StringIO()
        configure_logging(stream=stream, level="warning")
        logger = get_logger("test")
        logger.info("quiet")
        logger.warning("loud")

        messages = [json.loads(line)["message"] for line in stream.getvalue().splitlines()]
        assert messages == ["loud"]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TestExceptionFields:
    def test_engine_error_attributes(self, lines):
        try:
            raise InvalidStateError("req-9", "approved", "decide")
        except InvalidStateError:
            get_logger("test").exception("decide_failed")

        [record] = lines()
        assert record["level"] == "ERROR"
        assert record["exc_type"] == "InvalidStateError"
        assert record["exc_code"] == "INVALID_STATE"
        assert record["exc_request_id"] == "req-9"
        assert record["exc_current_status"] == "approved"
        assert record["exc_attempted"] == "decide"
        assert "Traceback" in record["traceback"]

    def test_foreign_error_has_no_code(self, lines):
        try:
            raise ConnectionError("broker down")
        except ConnectionError:
            get_logger("test").exception("publish_failed")

        [record] = lines()
        assert record["exc_type"] == "ConnectionError"
        assert record["exc_message"] == "broker down"
        assert "exc_code" not in record


# ---------------------------------------------------------------------------
# LogContext
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_fields(self):
        assert CONTEXT_FIELDS == ("request_id", "actor_id", "event_id", "topic")

    def test_bound_fields_stamped_on_lines(self, lines):
        with LogContext.bind(request_id="req-1", actor_id="analyst.ana"):
            get_logger("test").info("inside")
        get_logger("test").info("outside")

        inside, outside = lines()
        assert inside["request_id"] == "req-1"
        assert inside["actor_id"] == "analyst.ana"
        assert "request_id" not in outside

    def test_nested_bind_restores(self):
        with LogContext.bind(request_id="outer", actor_id="clerk.carla"):
            with LogContext.bind(event_id="ev-1", topic="request.created") as bound:
                assert bound == {
                    "request_id": "outer",
                    "actor_id": "clerk.carla",
                    "event_id": "ev-1",
                    "topic": "request.created",
                }
            assert LogContext.get_all() == {"request_id": "outer", "actor_id": "clerk.carla"}
        assert LogContext.get_all() == {}

    def test_none_and_non_string_values(self):
        request_id = uuid4()
        LogContext.set(request_id=request_id, actor_id=None)
        assert LogContext.get_all() == {"request_id": str(request_id)}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="correlation_id"):
            LogContext.set(correlation_id="c-1")
        with pytest.raises(TypeError):
            with LogContext.bind(trace_id="t-1"):
                pass

    def test_thread_bindings_stay_in_thread(self):
        seen = {}

        def worker():
            LogContext.set(event_id="ev-worker")
            seen["worker"] = LogContext.get_all()

        with LogContext.bind(request_id="main"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()
            assert LogContext.get_all() == {"request_id": "main"}

        assert seen["worker"]["event_id"] == "ev-worker"

    def test_extra_does_not_override_context(self, lines):
        with LogContext.bind(request_id="from-context"):
            get_logger("test").info("clash", extra={"request_id": "from-extra"})

        assert lines()[0]["request_id"] == "from-context"


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_only_first_call_applies(self):
        configure_logging(stream=StringIO())
        configure_logging(stream=StringIO())
        root = logging.getLogger("approval_kernel")
        assert len(root.handlers) == 1
        assert root.propagate is False

    def test_unknown_level_name(self):
        with pytest.raises(ValueError, match="verbose"):
            configure_logging(level="verbose")
        configure_logging(stream=StringIO())
        assert len(logging.getLogger("approval_kernel").handlers) == 1

    def test_reset_detaches_handlers(self):
        configure_logging(stream=StringIO())
        reset_logging()
        root = logging.getLogger("approval_kernel")
        assert root.handlers == []
        assert root.propagate is True

    def test_engine_tracer_shares_the_hierarchy(self, lines):
        """The pure-engine tracer logs under approval_kernel without importing it."""
        from approval_engines.strategies import default_strategy_registry, resolve_decisions

        resolve_decisions(
            strategy_key="any_one",
            approvers=(),
            decisions=(),
            registry=default_strategy_registry(),
        )

        traces = [r for r in lines() if r["message"] == "APPROVAL_ENGINE_TRACE"]
        assert traces and traces[0]["engine_name"] == "resolution"
        assert len(traces[0]["input_fingerprint"]) == 16
