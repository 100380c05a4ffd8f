"""
Payment Verifier.

Builds x402 funding requirements, validates payment proofs through the
facilitator and credits each settlement exactly once.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any

from blake3 import blake3

from .config import AssetConfig, PricingConfig, UpstreamConfig, default_assets
from .errors import PaymentVerificationFailedError
from .facilitator import Facilitator
from .ledger import LedgerStore
from .logging import PaymentLog, get_logger
from .models import Asset, FundingRequirement

logger = get_logger("gas_meter.payments")

X402_VERSION = 1
PAYMENT_TIMEOUT_SECONDS = 60


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    settled_units: int = 0
    reference: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    settled_units: int
    credited: int
    reference: str
    applied: bool


def decode_proof(proof: str) -> dict[str, Any] | None:
    """Base64 JSON payment payload, or None when it cannot be read."""
    if not proof or not isinstance(proof, str):
        return None
    try:
        raw = base64.b64decode(proof.strip(), validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def encode_document(document: dict[str, Any]) -> str:
    return base64.b64encode(json.dumps(document, separators=(",", ":")).encode("utf-8")).decode("ascii")


class PaymentVerifier:
    def __init__(
        self,
        ledger: LedgerStore,
        facilitator: Facilitator,
        *,
        pricing: PricingConfig | None = None,
        upstream: UpstreamConfig | None = None,
        assets: dict[Asset, AssetConfig] | None = None,
        resource: str = "/fund",
    ) -> None:
        self.ledger = ledger
        self.facilitator = facilitator
        self.pricing = pricing or PricingConfig()
        self.upstream = upstream or UpstreamConfig()
        self.assets = assets or default_assets()
        self.resource = resource

    def requirement(self, unit_count: int | None = None) -> FundingRequirement:
        units = self.pricing.payment_batch_units if unit_count is None else int(unit_count)
        units = max(1, min(units, self.pricing.max_payment_units))
        return FundingRequirement(unit_count=units, asset_price=self.pricing.price_for_units(units))

    def payment_requirements(self, requirement: FundingRequirement, *, resource: str | None = None) -> dict[str, Any]:
        """The single `accepts` entry: what the facilitator checks a proof against."""
        stable = self.assets[Asset.STABLE]
        return {
            "scheme": "exact",
            "network": self.upstream.network,
            "maxAmountRequired": str(requirement.asset_price),
            "resource": resource or self.resource,
            "description": f"Fund {requirement.unit_count} sponsored transactions "
            f"(${self.pricing.usd_for_units(1, stable.decimals)}/tx)",
            "mimeType": "application/json",
            "payTo": self.upstream.sponsor_wallet,
            "maxTimeoutSeconds": PAYMENT_TIMEOUT_SECONDS,
            "asset": stable.mint,
            "extra": {
                "name": stable.symbol,
                "decimals": stable.decimals,
                "unitCount": requirement.unit_count,
                "priceUsd": self.pricing.usd_for_units(requirement.unit_count, stable.decimals),
            },
        }

    def payment_required(self, requirement: FundingRequirement, *, resource: str | None = None) -> dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "error": "Payment Required",
            "accepts": [self.payment_requirements(requirement, resource=resource)],
        }

    def payment_required_header(self, requirement: FundingRequirement, *, resource: str | None = None) -> str:
        """Value for the `X-Payment-Required` response header."""
        return encode_document(self.payment_required(requirement, resource=resource))

    async def verify(self, proof: str, requirement: FundingRequirement) -> VerificationResult:
        payload = decode_proof(proof)
        if payload is None:
            return VerificationResult(valid=False, reason="Payment proof is not base64-encoded JSON")

        try:
            settlement = await self.facilitator.verify_and_settle(payload, self.payment_requirements(requirement))
        except PaymentVerificationFailedError as exc:
            return VerificationResult(valid=False, reason=exc.reason or exc.message)

        units = min(settlement.settled_amount // self.pricing.unit_price_stable, requirement.unit_count)
        if units <= 0:
            return VerificationResult(
                valid=False,
                reference=settlement.reference,
                reason=f"Settled amount {settlement.settled_amount} is below the price of one transaction",
            )
        reference = settlement.reference or blake3(proof.encode("utf-8")).hexdigest()
        return VerificationResult(valid=True, settled_units=units, reference=reference)

    async def apply(self, project_id: str, proof: str, requirement: FundingRequirement) -> PaymentResult:
        # Unknown projects fail before anything is settled on their behalf.
        await self.ledger.get(project_id)

        result = await self.verify(proof, requirement)
        if not result.valid:
            logger.warning("Payment rejected", project_id=project_id, reason=result.reason)
            raise PaymentVerificationFailedError(reason=result.reason)

        credited = result.settled_units * self.pricing.unit_cost(Asset.NATIVE)
        credit = await self.ledger.credit(
            project_id,
            Asset.NATIVE,
            credited,
            reference=f"payment:{result.reference}",
            kind="payment",
            detail={"units": result.settled_units, "settlement": result.reference},
        )
        logger.log_payment(
            PaymentLog(
                project_id=project_id,
                reference=str(result.reference),
                settled_units=result.settled_units,
                credited=credited if credit.applied else 0,
                applied=credit.applied,
            )
        )
        return PaymentResult(
            settled_units=result.settled_units,
            credited=credited if credit.applied else 0,
            reference=str(result.reference),
            applied=credit.applied,
        )


__all__ = [
    "VerificationResult",
    "PaymentResult",
    "PaymentVerifier",
    "decode_proof",
    "encode_document",
]
