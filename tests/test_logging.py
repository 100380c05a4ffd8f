"""
Tests for structured logging.
"""
import json
import logging

from gas_meter.errors import UpstreamSigningError
from gas_meter.logging import (
    DepositLog,
    JSONFormatter,
    RelayLog,
    StructuredLogger,
    Timer,
    generate_request_id,
    redact_secret,
    timed,
)


def _records(caplog, name):
    return [json.loads(r.getMessage()) for r in caplog.records if r.name == name]


class TestStructuredLogger:
    def test_relay_record(self, caplog):
        logger = StructuredLogger("gas_meter.test.relay")
        caplog.set_level(logging.INFO, logger="gas_meter.test.relay")

        logger.log_relay(RelayLog(request_id="req_1", project_id="proj_1", tier="sponsored", signature="5ig", charged=5000))

        (record,) = _records(caplog, "gas_meter.test.relay")
        assert record["event_type"] == "relay"
        assert record["signature"] == "5ig"
        assert record["charged"] == 5000
        assert "error" not in record

    def test_failed_relay_logs_warning(self, caplog):
        logger = StructuredLogger("gas_meter.test.relay_fail")
        caplog.set_level(logging.INFO, logger="gas_meter.test.relay_fail")

        logger.log_relay(RelayLog(request_id="req_1", project_id="p", tier="sponsored", success=False, error="boom"))

        assert caplog.records[-1].levelno == logging.WARNING

    def test_deposit_record(self, caplog):
        logger = StructuredLogger("gas_meter.test.deposit")
        caplog.set_level(logging.INFO, logger="gas_meter.test.deposit")

        logger.log_deposit(
            DepositLog(project_id="p", asset="stable", signature="s", deposited=1, credited=10, credited_asset="native")
        )

        (record,) = _records(caplog, "gas_meter.test.deposit")
        assert record["message"] == "Credited 10 native to p"

    def test_bound_fields_are_scoped(self, caplog):
        logger = StructuredLogger("gas_meter.test.bind")
        caplog.set_level(logging.INFO, logger="gas_meter.test.bind")

        with logger.bind(request_id="req_9", project_id="proj_9"):
            with logger.bind(asset="native", ignored=None):
                logger.info("inner")
            logger.info("outer")
        logger.info("after")

        inner, outer, after = _records(caplog, "gas_meter.test.bind")
        assert inner["request_id"] == "req_9"
        assert inner["asset"] == "native"
        assert "ignored" not in inner
        assert "asset" not in outer
        assert outer["project_id"] == "proj_9"
        assert "project_id" not in after
        assert logger.bound == {}

    def test_log_error_includes_code(self, caplog):
        logger = StructuredLogger("gas_meter.test.error")
        caplog.set_level(logging.INFO, logger="gas_meter.test.error")

        logger.log_error(UpstreamSigningError("down"), "Relay failed", project_id="p")

        (record,) = _records(caplog, "gas_meter.test.error")
        assert record["error_code"] == "ERR_3000"
        assert record["retryable"] is False


def test_json_formatter_wraps_plain_messages():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "plain text", None, None)

    data = json.loads(JSONFormatter().format(record))

    assert data["message"] == "plain text"
    assert data["level"] == "INFO"


def test_redact_secret():
    assert redact_secret(None) == "<not set>"
    assert redact_secret("short") == "***"
    assert redact_secret("abcdefghijkl") == "abcd...ijkl"


def test_timers():
    timer = Timer()
    assert timer.stop() >= 0

    with timed() as t:
        assert t.running
    assert not t.running
    assert t.elapsed_ms == t.stop()

    assert generate_request_id().startswith("req_")
