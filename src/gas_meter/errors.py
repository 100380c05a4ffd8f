"""
Error taxonomy for gas-meter.

This module provides a hierarchical exception system with:
- Error codes for programmatic handling
- Retryable vs non-retryable classification
- Structured context for debugging
- An HTTP status per error kind, used by the API adapter
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the metering service."""

    # Request errors (1xxx)
    VALIDATION_ERROR = "ERR_1000"
    PROJECT_NOT_FOUND = "ERR_1001"
    PROJECT_INACTIVE = "ERR_1002"

    # Funding errors (2xxx)
    INSUFFICIENT_BALANCE = "ERR_2000"
    PAYMENT_VERIFICATION_FAILED = "ERR_2001"

    # Upstream errors (3xxx)
    UPSTREAM_SIGNING = "ERR_3000"
    UPSTREAM_BROADCAST = "ERR_3001"

    # Throttling (4xxx)
    RATE_LIMITED = "ERR_4000"

    # Background work (5xxx)
    RECONCILIATION_TRANSIENT = "ERR_5000"

    # Access (6xxx)
    UNAUTHORIZED = "ERR_6000"

    # Internal errors (9xxx)
    CONFIG_ERROR = "ERR_9000"
    LEDGER_ERROR = "ERR_9001"
    INTERNAL_ERROR = "ERR_9999"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    request_id: str | None = None
    project_id: str | None = None
    asset: str | None = None
    operation: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "project_id": self.project_id,
            "asset": self.asset,
            "operation": self.operation,
            **self.extra,
        }


class GasMeterError(Exception):
    """
    Base exception for all gas-meter errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the operation can be retried
        http_status: Status the API adapter responds with
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False
    http_status: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        parts = [f"[{self.code.value}] {self.message}"]
        if self.context.project_id:
            parts.append(f"(project_id={self.context.project_id})")
        return " ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_response(self) -> dict[str, Any]:
        """Caller-visible body. Subclasses add remediation fields."""
        return {
            "error": self.message,
            "code": self.code.value,
            "kind": self.__class__.__name__,
        }


# =============================================================================
# Request Errors
# =============================================================================


class ValidationError(GasMeterError):
    """Malformed request."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = 400


class ProjectNotFoundError(GasMeterError):
    """Unknown project id."""

    code = ErrorCode.PROJECT_NOT_FOUND
    http_status = 404

    def __init__(
        self,
        message: str = "Project not found",
        *,
        project_id: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.project_id = project_id
        if project_id and not self.context.project_id:
            self.context.project_id = project_id

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["register"] = "POST /register (sponsored) or POST /payg/register (pay-as-you-go)"
        return body


class ProjectInactiveError(GasMeterError):
    """Project exists but has been deactivated."""

    code = ErrorCode.PROJECT_INACTIVE
    http_status = 403

    def __init__(self, message: str = "Project inactive", *, project_id: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.project_id = project_id
        if project_id and not self.context.project_id:
            self.context.project_id = project_id


# =============================================================================
# Funding Errors
# =============================================================================


class InsufficientBalanceError(GasMeterError):
    """A debit or reservation would take a balance below zero."""

    code = ErrorCode.INSUFFICIENT_BALANCE
    http_status = 402

    def __init__(
        self,
        message: str = "Insufficient balance",
        *,
        project_id: str | None = None,
        asset: str | None = None,
        required: int | None = None,
        available: int | None = None,
        funding: dict[str, Any] | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.project_id = project_id
        self.asset = asset
        self.required = required
        self.available = available
        self.funding = funding
        if project_id and not self.context.project_id:
            self.context.project_id = project_id
        if asset and not self.context.asset:
            self.context.asset = asset

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["asset"] = self.asset
        body["required"] = self.required
        body["available"] = self.available
        if self.funding:
            body["topUp"] = dict(self.funding)
        return body


class PaymentVerificationFailedError(GasMeterError):
    """The facilitator rejected the payment proof or failed to settle it."""

    code = ErrorCode.PAYMENT_VERIFICATION_FAILED
    http_status = 402

    def __init__(
        self,
        message: str = "Payment verification failed",
        *,
        reason: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.reason = reason

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        body["details"] = self.reason
        body["hint"] = "Submit a new payment proof; proofs are never re-settled."
        return body


# =============================================================================
# Upstream Errors
# =============================================================================


class UpstreamError(GasMeterError):
    """Base class for fee-payer and RPC failures."""

    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class UpstreamSigningError(UpstreamError):
    """The fee-payer service refused or failed to sign."""

    code = ErrorCode.UPSTREAM_SIGNING


class UpstreamBroadcastError(UpstreamError):
    """The signed transaction could not be submitted to the network."""

    code = ErrorCode.UPSTREAM_BROADCAST


# =============================================================================
# Throttling / Background / Access
# =============================================================================


class RateLimitedError(GasMeterError):
    """Request budget exhausted for this caller."""

    code = ErrorCode.RATE_LIMITED
    retryable = True
    http_status = 429

    def __init__(
        self,
        message: str = "Too many requests, please try again later",
        *,
        retry_after: float | None = None,
        scope: str | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.scope = scope

    def to_response(self) -> dict[str, Any]:
        body = super().to_response()
        if self.retry_after is not None:
            body["retryAfter"] = round(self.retry_after, 3)
        return body


class ReconciliationTransientError(GasMeterError):
    """A deposit poll cycle failed; the next cycle retries from the same cursor."""

    code = ErrorCode.RECONCILIATION_TRANSIENT
    retryable = True
    http_status = 503


class UnauthorizedError(GasMeterError):
    """Missing or wrong admin credentials."""

    code = ErrorCode.UNAUTHORIZED
    http_status = 401


class ConfigError(GasMeterError):
    """Configuration is invalid or incomplete."""

    code = ErrorCode.CONFIG_ERROR
    http_status = 500


class LedgerError(GasMeterError):
    """The ledger store could not complete a write."""

    code = ErrorCode.LEDGER_ERROR
    retryable = True
    http_status = 500


def is_retryable(error: Exception) -> bool:
    """
    Check if an error is retryable.

    Args:
        error: Exception to check

    Returns:
        True if the error is retryable
    """
    if isinstance(error, GasMeterError):
        return error.retryable

    retryable_types = (
        asyncio.TimeoutError,
        ConnectionError,
        TimeoutError,
    )
    return isinstance(error, retryable_types)


__all__ = [
    "ErrorCode",
    "ErrorContext",
    "GasMeterError",
    "ValidationError",
    "ProjectNotFoundError",
    "ProjectInactiveError",
    "InsufficientBalanceError",
    "PaymentVerificationFailedError",
    "UpstreamError",
    "UpstreamSigningError",
    "UpstreamBroadcastError",
    "RateLimitedError",
    "ReconciliationTransientError",
    "UnauthorizedError",
    "ConfigError",
    "LedgerError",
    "is_retryable",
]
