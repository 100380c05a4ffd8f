"""
Structured logging for gas-meter.

Every record is one JSON object (or a `key=value` line in text mode) carrying
the message, any fields bound with `StructuredLogger.bind`, and the
event-specific payload. Deposits, payments and relays have typed records so
that their fields stay stable for log queries.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

# Fields bound for the current task (request id, project id, asset, ...).
_bound: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("gas_meter_log_fields", default={})


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Event records
# =============================================================================


@dataclass
class _EventRecord:
    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DepositLog(_EventRecord):
    """A deposit credited by the reconciler."""

    project_id: str
    asset: str
    signature: str
    deposited: int
    credited: int
    credited_asset: str
    timestamp: str = field(default_factory=_utcnow)


@dataclass
class PaymentLog(_EventRecord):
    """An x402 settlement applied (or found already applied) to a project."""

    project_id: str
    reference: str
    settled_units: int
    credited: int
    applied: bool = True
    timestamp: str = field(default_factory=_utcnow)


@dataclass
class RelayLog(_EventRecord):
    """Outcome of one metered relay request."""

    request_id: str
    project_id: str
    tier: str
    success: bool = True
    funding_source: str | None = None
    signature: str | None = None
    error: str | None = None
    charged: int = 0
    remaining: int | None = None
    duration_ms: float | None = None
    timestamp: str = field(default_factory=_utcnow)


# =============================================================================
# Logger
# =============================================================================


class StructuredLogger:
    """
    Thin wrapper over a stdlib logger that emits structured records.

        logger = get_logger("gas_meter.gateway")
        with logger.bind(request_id=rid, project_id=pid):
            logger.info("Relay accepted", source="native")
    """

    def __init__(self, name: str = "gas_meter", level: str = "INFO", json_output: bool = True):
        self.name = name
        self.json_output = json_output
        self._logger = logging.getLogger(name)
        self._logger.setLevel(getattr(logging, level.upper()))
        if not self._logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(_formatter(json_output))
            self._logger.addHandler(handler)

    @property
    def bound(self) -> dict[str, Any]:
        return dict(_bound.get())

    @contextmanager
    def bind(self, **fields: Any) -> Iterator[dict[str, Any]]:
        """Attach `fields` to every record logged by this task until the block exits."""
        merged = {**_bound.get(), **{k: v for k, v in fields.items() if v is not None}}
        token = _bound.set(merged)
        try:
            yield merged
        finally:
            _bound.reset(token)

    def _emit(self, level: int, message: str, fields: dict[str, Any], event_type: str | None = None) -> None:
        if not self._logger.isEnabledFor(level):
            return
        payload: dict[str, Any] = {"message": message, **_bound.get()}
        if event_type:
            payload["event_type"] = event_type
        payload.update(fields)
        if self.json_output:
            self._logger.log(level, json.dumps(payload, default=str))
        else:
            rest = " ".join(f"{k}={v}" for k, v in payload.items() if k != "message")
            self._logger.log(level, f"{message} {rest}".rstrip())

    def debug(self, message: str, **fields) -> None:
        self._emit(logging.DEBUG, message, fields)

    def info(self, message: str, **fields) -> None:
        self._emit(logging.INFO, message, fields)

    def warning(self, message: str, **fields) -> None:
        self._emit(logging.WARNING, message, fields)

    def error(self, message: str, **fields) -> None:
        self._emit(logging.ERROR, message, fields)

    def log_deposit(self, record: DepositLog) -> None:
        self._emit(
            logging.INFO,
            f"Credited {record.credited} {record.credited_asset} to {record.project_id}",
            record.to_dict(),
            event_type="deposit",
        )

    def log_payment(self, record: PaymentLog) -> None:
        suffix = "" if record.applied else " (already applied)"
        self._emit(
            logging.INFO,
            f"Payment {record.reference} for {record.project_id}{suffix}",
            record.to_dict(),
            event_type="payment",
        )

    def log_relay(self, record: RelayLog) -> None:
        outcome = "relayed" if record.success else "failed"
        self._emit(
            logging.INFO if record.success else logging.WARNING,
            f"Relay {outcome} for {record.project_id}",
            record.to_dict(),
            event_type="relay",
        )

    def log_error(self, error: Exception, message: str | None = None, **fields) -> None:
        """Log an exception; GasMeterError subclasses also contribute their code."""
        payload = {"error_type": type(error).__name__, "error_message": str(error), **fields}
        code = getattr(error, "code", None)
        if code is not None:
            payload["error_code"] = getattr(code, "value", str(code))
        if hasattr(error, "retryable"):
            payload["retryable"] = error.retryable
        self._emit(logging.ERROR, message or f"Error: {error}", payload, event_type="error")


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """Merges a JSON-encoded message into the envelope; wraps plain messages."""

    def format(self, record: logging.LogRecord) -> str:
        envelope: dict[str, Any] = {"timestamp": _utcnow(), "level": record.levelname, "logger": record.name}
        text = record.getMessage()
        try:
            decoded = json.loads(text)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            envelope.update(decoded)
        else:
            envelope["message"] = text
        if record.exc_info:
            envelope["exception"] = self.formatException(record.exc_info)
        return json.dumps(envelope, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        line = f"{stamp} {record.levelname:<8} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _formatter(json_output: bool) -> logging.Formatter:
    return JSONFormatter() if json_output else TextFormatter()


# =============================================================================
# Utilities
# =============================================================================


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def redact_secret(key: str | None) -> str:
    """Safe rendering of an API or admin key for logs."""
    if not key:
        return "<not set>"
    if len(key) <= 8:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


class Timer:
    """Monotonic stopwatch; `elapsed_ms` keeps counting until `stop()`."""

    def __init__(self) -> None:
        self._started = time.monotonic()
        self._stopped: float | None = None

    @property
    def running(self) -> bool:
        return self._stopped is None

    @property
    def elapsed_ms(self) -> float:
        end = self._stopped if self._stopped is not None else time.monotonic()
        return (end - self._started) * 1000

    def stop(self) -> float:
        if self._stopped is None:
            self._stopped = time.monotonic()
        return self.elapsed_ms


@contextmanager
def timed() -> Iterator[Timer]:
    timer = Timer()
    try:
        yield timer
    finally:
        timer.stop()


# =============================================================================
# Registry
# =============================================================================

_loggers: dict[str, StructuredLogger] = {}
_defaults: dict[str, Any] = {"level": "INFO", "json_output": True}


def get_logger(name: str = "gas_meter") -> StructuredLogger:
    logger = _loggers.get(name)
    if logger is None:
        logger = StructuredLogger(name, **_defaults)
        _loggers[name] = logger
    return logger


def configure_logging(level: str = "INFO", json_output: bool = True) -> StructuredLogger:
    """Set level and output format for every logger handed out by `get_logger`, now and later."""
    _defaults.update(level=level, json_output=json_output)
    for existing in _loggers.values():
        existing.json_output = json_output
        existing._logger.setLevel(getattr(logging, level.upper()))
        for handler in existing._logger.handlers:
            handler.setFormatter(_formatter(json_output))
    return get_logger("gas_meter")


__all__ = [
    "DepositLog",
    "PaymentLog",
    "RelayLog",
    "StructuredLogger",
    "JSONFormatter",
    "TextFormatter",
    "Timer",
    "timed",
    "generate_request_id",
    "redact_secret",
    "get_logger",
    "configure_logging",
]
