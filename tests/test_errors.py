"""
Tests for the error taxonomy.
"""
import asyncio

import pytest

from gas_meter.errors import (
    ConfigError,
    ErrorCode,
    ErrorContext,
    GasMeterError,
    InsufficientBalanceError,
    LedgerError,
    PaymentVerificationFailedError,
    ProjectInactiveError,
    ProjectNotFoundError,
    RateLimitedError,
    ReconciliationTransientError,
    UnauthorizedError,
    UpstreamBroadcastError,
    UpstreamError,
    UpstreamSigningError,
    ValidationError,
    is_retryable,
)


class TestErrorCodes:
    """Test error code enumeration."""

    def test_error_codes_are_strings(self):
        assert ErrorCode.VALIDATION_ERROR.value.startswith("ERR_")
        assert ErrorCode.RATE_LIMITED.value == "ERR_4000"

    def test_error_codes_unique(self):
        values = [e.value for e in ErrorCode]
        assert len(values) == len(set(values))


class TestErrorContext:
    def test_to_dict_merges_extra(self):
        ctx = ErrorContext(request_id="req_1", project_id="proj_1", extra={"attempt": 2})

        d = ctx.to_dict()

        assert d["request_id"] == "req_1"
        assert d["project_id"] == "proj_1"
        assert d["attempt"] == 2


@pytest.mark.parametrize(
    "error,code,status,retryable",
    [
        (ValidationError("bad"), ErrorCode.VALIDATION_ERROR, 400, False),
        (ProjectNotFoundError(project_id="p"), ErrorCode.PROJECT_NOT_FOUND, 404, False),
        (ProjectInactiveError(project_id="p"), ErrorCode.PROJECT_INACTIVE, 403, False),
        (InsufficientBalanceError(), ErrorCode.INSUFFICIENT_BALANCE, 402, False),
        (PaymentVerificationFailedError(reason="x"), ErrorCode.PAYMENT_VERIFICATION_FAILED, 402, False),
        (UpstreamSigningError("x"), ErrorCode.UPSTREAM_SIGNING, 502, False),
        (UpstreamBroadcastError("x"), ErrorCode.UPSTREAM_BROADCAST, 502, False),
        (RateLimitedError(retry_after=1.0), ErrorCode.RATE_LIMITED, 429, True),
        (ReconciliationTransientError("x"), ErrorCode.RECONCILIATION_TRANSIENT, 503, True),
        (UnauthorizedError("x"), ErrorCode.UNAUTHORIZED, 401, False),
        (ConfigError("x"), ErrorCode.CONFIG_ERROR, 500, False),
        (LedgerError("x"), ErrorCode.LEDGER_ERROR, 500, True),
    ],
)
def test_error_classification(error, code, status, retryable):
    assert isinstance(error, GasMeterError)
    assert error.code == code
    assert error.http_status == status
    assert error.retryable is retryable
    assert is_retryable(error) is retryable


class TestGasMeterError:
    def test_str_includes_code_and_project(self):
        err = ProjectNotFoundError(project_id="proj_x")

        assert "[ERR_1001]" in str(err)
        assert "project_id=proj_x" in str(err)

    def test_to_dict(self):
        cause = RuntimeError("boom")
        err = UpstreamSigningError("fee payer down", upstream_status=503, cause=cause)

        d = err.to_dict()

        assert d["error_type"] == "UpstreamSigningError"
        assert d["code"] == "ERR_3000"
        assert d["cause"] == "boom"
        assert err.upstream_status == 503
        assert isinstance(err, UpstreamError)

    def test_code_override(self):
        err = GasMeterError("custom", code=ErrorCode.CONFIG_ERROR, retryable=True)

        assert err.code == ErrorCode.CONFIG_ERROR
        assert err.retryable is True


class TestResponses:
    def test_not_found_carries_registration_hint(self):
        body = ProjectNotFoundError(project_id="p").to_response()

        assert body["code"] == "ERR_1001"
        assert "register" in body

    def test_insufficient_balance_carries_funding(self):
        err = InsufficientBalanceError(
            project_id="p",
            asset="native",
            required=5000,
            available=0,
            funding={"receivingAddress": "W", "memo": "p"},
        )

        body = err.to_response()

        assert body["required"] == 5000
        assert body["available"] == 0
        assert body["topUp"]["memo"] == "p"
        assert err.context.asset == "native"

    def test_payment_failure_carries_reason(self):
        body = PaymentVerificationFailedError(reason="signature mismatch").to_response()

        assert body["details"] == "signature mismatch"

    def test_rate_limited_retry_after(self):
        body = RateLimitedError(retry_after=2.5, scope="metered").to_response()

        assert body["retryAfter"] == 2.5


class TestIsRetryable:
    def test_builtin_timeouts_are_retryable(self):
        assert is_retryable(asyncio.TimeoutError())
        assert is_retryable(ConnectionError())

    def test_other_exceptions_are_not(self):
        assert not is_retryable(ValueError("x"))
