"""
Metering Gateway.

The only debit path. For each relay request:

1. validate the payload and resolve the project
2. pick a funding source with the tier's policy, settling an attached
   payment proof first when nothing covers a unit
3. reserve one unit cost on that source
4. hand the transaction to the fee payer with no ledger lock held
5. commit the reservation on success, release it on any failure

A failed, timed-out or cancelled send never changes a balance.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Any

from .config import AssetConfig, PricingConfig, UpstreamConfig, default_assets
from .errors import InsufficientBalanceError, ProjectInactiveError, ValidationError
from .ledger import LedgerStore
from .logging import RelayLog, generate_request_id, get_logger, timed
from .models import Asset, FundingRequirement, Project, Tier
from .payments import PaymentResult, PaymentVerifier
from .policy import FundingPolicy, policy_for
from .signer import FeePayer

logger = get_logger("gas_meter.gateway")

# Solana packet limit for a serialized transaction.
MAX_TRANSACTION_BYTES = 1232


@dataclass(frozen=True)
class RelayResult:
    signature: str
    funding_source: Asset
    remaining_balance: int
    tier: Tier
    charged: int
    payment: PaymentResult | None = None


@dataclass(frozen=True)
class FundingShortfall:
    """Returned instead of raising when a project cannot cover one unit."""

    required_asset: Asset
    receiving_address: str
    required_amount: int
    attached_note: str
    requirement: FundingRequirement
    payment_requirement: dict[str, Any]


def validate_transaction(transaction: Any, *, max_bytes: int = MAX_TRANSACTION_BYTES) -> bytes:
    if not isinstance(transaction, str) or not transaction.strip():
        raise ValidationError("transaction (base64) required")
    try:
        raw = base64.b64decode(transaction.strip(), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("transaction must be base64-encoded") from None
    if not raw:
        raise ValidationError("transaction is empty")
    if len(raw) > max_bytes:
        raise ValidationError(f"transaction exceeds {max_bytes} bytes")
    return raw


class MeteringGateway:
    def __init__(
        self,
        ledger: LedgerStore,
        signer: FeePayer,
        verifier: PaymentVerifier,
        *,
        pricing: PricingConfig | None = None,
        upstream: UpstreamConfig | None = None,
        assets: dict[Asset, AssetConfig] | None = None,
        max_transaction_bytes: int = MAX_TRANSACTION_BYTES,
    ) -> None:
        self.ledger = ledger
        self.signer = signer
        self.verifier = verifier
        self.pricing = pricing or PricingConfig()
        self.upstream = upstream or UpstreamConfig()
        self.assets = assets or default_assets()
        self.max_transaction_bytes = max_transaction_bytes

    async def _load_active(self, project_id: str | None) -> Project:
        if not project_id or not str(project_id).strip():
            raise ValidationError("X-Project-ID header required")
        project = await self.ledger.get(str(project_id).strip())
        if not project.active:
            raise ProjectInactiveError(project_id=project.id)
        return project

    def shortfall(self, project: Project, policy: FundingPolicy) -> FundingShortfall:
        asset = policy.shortfall_asset
        requirement = self.verifier.requirement()
        return FundingShortfall(
            required_asset=asset,
            receiving_address=self.upstream.sponsor_wallet,
            required_amount=self.pricing.unit_cost(asset) - project.balance(asset),
            attached_note=project.id,
            requirement=requirement,
            payment_requirement=self.verifier.payment_required(requirement),
        )

    def _with_funding(self, exc: InsufficientBalanceError, project: Project) -> InsufficientBalanceError:
        exc.funding = {
            "receivingAddress": self.upstream.sponsor_wallet,
            "memo": project.id,
            "x402": "POST /fund",
        }
        return exc

    async def relay(
        self,
        project_id: str | None,
        transaction: str,
        payment_proof: str | None = None,
        *,
        request_id: str | None = None,
    ) -> RelayResult | FundingShortfall:
        request_id = request_id or generate_request_id()
        validate_transaction(transaction, max_bytes=self.max_transaction_bytes)
        project = await self._load_active(project_id)
        policy = policy_for(project.tier, self.pricing)

        # Holds of in-flight relays count against the source; `reserve` has the final say.
        source = policy.select_source(project.available_balances())
        payment: PaymentResult | None = None
        if source is None and payment_proof:
            payment = await self.verifier.apply(project.id, payment_proof, self.verifier.requirement())
            project = await self.ledger.get(project.id)
            source = policy.select_source(project.available_balances())
        if source is None:
            held_source = policy.select_source(project.balances)
            if held_source is not None:
                cost = self.pricing.unit_cost(held_source)
                raise self._with_funding(
                    InsufficientBalanceError(
                        "Balance is committed to other in-flight requests",
                        project_id=project.id,
                        asset=held_source.value,
                        required=cost,
                        available=max(0, project.available(held_source)),
                    ),
                    project,
                )
            logger.info("Funding shortfall", project_id=project.id, tier=project.tier.value, request_id=request_id)
            return self.shortfall(project, policy)

        cost = self.pricing.unit_cost(source)
        try:
            reservation = await self.ledger.reserve(project.id, source, cost)
        except InsufficientBalanceError as exc:
            self._with_funding(exc, project)
            raise

        committed = False
        with timed() as timer:
            try:
                signature = await self.signer.sign_and_broadcast(transaction)
                try:
                    project = await self.ledger.commit(reservation, signature=signature)
                except InsufficientBalanceError as exc:
                    # Only reachable when the hold outlived its TTL.
                    logger.log_error(exc, "Broadcast transaction could not be charged", signature=signature)
                    raise
                committed = True
            except BaseException as exc:
                logger.log_relay(
                    RelayLog(
                        request_id=request_id,
                        project_id=project.id,
                        tier=project.tier.value,
                        success=False,
                        funding_source=source.value,
                        error=f"{type(exc).__name__}: {exc}",
                        duration_ms=timer.elapsed_ms,
                    )
                )
                raise
            finally:
                if not committed:
                    await self.ledger.release(reservation)

        remaining = project.balance(source)
        logger.log_relay(
            RelayLog(
                request_id=request_id,
                project_id=project.id,
                tier=project.tier.value,
                success=True,
                funding_source=source.value,
                signature=signature,
                duration_ms=timer.elapsed_ms,
                charged=cost,
                remaining=remaining,
            )
        )
        return RelayResult(
            signature=signature,
            funding_source=source,
            remaining_balance=remaining,
            tier=project.tier,
            charged=cost,
            payment=payment,
        )


__all__ = ["MeteringGateway", "RelayResult", "FundingShortfall", "validate_transaction", "MAX_TRANSACTION_BYTES"]
