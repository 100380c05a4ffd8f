"""
x402 facilitator client.

The facilitator checks a payment payload against the requirement we issued
(`/verify`) and then executes it on-chain (`/settle`). Every failure is
reported as PaymentVerificationFailedError; proofs are never retried.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import aiohttp

from .config import UpstreamConfig
from .errors import PaymentVerificationFailedError
from .logging import get_logger

logger = get_logger("gas_meter.facilitator")


@dataclass(frozen=True)
class Settlement:
    settled_amount: int
    reference: str
    payer: str | None = None


class Facilitator(ABC):
    @abstractmethod
    async def verify_and_settle(self, proof: dict[str, Any], requirement: dict[str, Any]) -> Settlement:
        ...

    async def close(self) -> None:
        return


class HTTPFacilitatorClient(Facilitator):
    def __init__(
        self,
        config: UpstreamConfig | None = None,
        *,
        url: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        config = config or UpstreamConfig()
        self.base_url = (url or config.facilitator_url).rstrip("/")
        self.timeout_seconds = config.facilitator_timeout
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}{path}",
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                status = response.status
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise PaymentVerificationFailedError(
                reason=f"facilitator {path} unavailable: {type(exc).__name__}", cause=exc
            ) from exc
        if not isinstance(data, dict):
            raise PaymentVerificationFailedError(reason=f"facilitator {path} returned HTTP {status}")
        if status >= 400 and not data:
            raise PaymentVerificationFailedError(reason=f"facilitator {path} returned HTTP {status}")
        return data

    async def verify_and_settle(self, proof: dict[str, Any], requirement: dict[str, Any]) -> Settlement:
        body = {
            "x402Version": int(proof.get("x402Version") or 1),
            "paymentPayload": proof,
            "paymentRequirements": requirement,
        }

        verification = await self._post("/verify", body)
        if not verification.get("isValid"):
            raise PaymentVerificationFailedError(
                reason=verification.get("invalidReason") or verification.get("error") or "Invalid payment"
            )

        settlement = await self._post("/settle", body)
        if not settlement.get("success"):
            raise PaymentVerificationFailedError(
                reason=settlement.get("errorReason") or settlement.get("error") or "Settlement failed"
            )

        reference = settlement.get("transaction") or settlement.get("transactionHash")
        if not reference:
            raise PaymentVerificationFailedError(reason="Settlement returned no transaction reference")

        # The exact scheme settles the full required amount unless told otherwise.
        raw_amount = settlement.get("amount", requirement.get("maxAmountRequired", 0))
        try:
            settled_amount = int(raw_amount)
        except (TypeError, ValueError):
            raise PaymentVerificationFailedError(reason=f"Unreadable settled amount {raw_amount!r}") from None

        logger.info("Payment settled", reference=reference, settled_amount=settled_amount)
        return Settlement(
            settled_amount=settled_amount,
            reference=str(reference),
            payer=settlement.get("payer") or verification.get("payer"),
        )

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


__all__ = ["Settlement", "Facilitator", "HTTPFacilitatorClient"]
