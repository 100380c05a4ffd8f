from __future__ import annotations

from dataclasses import dataclass, field

from gas_meter.chain import SolanaRpcClient
from gas_meter.config import AssetConfig, PricingConfig, UpstreamConfig, default_assets
from gas_meter.errors import ConfigError
from gas_meter.facilitator import Facilitator, HTTPFacilitatorClient
from gas_meter.gateway import MeteringGateway
from gas_meter.ledger import LedgerStore, MemoryLedgerStore, PostgresLedgerStore, get_pool
from gas_meter.logging import get_logger
from gas_meter.models import Asset
from gas_meter.payments import PaymentVerifier
from gas_meter.reconciler import DepositReconciler
from gas_meter.signer import FeePayer, KoraFeePayer
from gas_meter.throttle import RequestThrottle

from .settings import Settings

logger = get_logger("gas_meter_api.services")


@dataclass
class ServiceContainer:
    ledger: LedgerStore
    rpc: SolanaRpcClient
    signer: FeePayer
    facilitator: Facilitator
    verifier: PaymentVerifier
    gateway: MeteringGateway
    throttle: RequestThrottle
    pricing: PricingConfig
    upstream: UpstreamConfig
    assets: dict[Asset, AssetConfig]
    reconcilers: list[DepositReconciler] = field(default_factory=list)

    async def close(self) -> None:
        for reconciler in self.reconcilers:
            await reconciler.stop()
        for resource in (self.signer, self.facilitator, self.rpc, self.ledger):
            await resource.close()


async def build_ledger(settings: Settings) -> LedgerStore:
    if settings.ledger_backend == "memory":
        return MemoryLedgerStore(reservation_ttl_sec=settings.reservation_ttl_sec)
    if settings.ledger_backend == "postgres":
        pool = await get_pool(settings.pg_dsn, min_size=settings.pg_pool_min, max_size=settings.pg_pool_max)
        store = PostgresLedgerStore(pool=pool, reservation_ttl_sec=settings.reservation_ttl_sec)
        await store.ensure_schema()
        return store
    raise ConfigError(f"GM_LEDGER_BACKEND must be 'memory' or 'postgres', got {settings.ledger_backend!r}")


async def build_services(
    settings: Settings,
    *,
    ledger: LedgerStore | None = None,
    rpc: SolanaRpcClient | None = None,
    signer: FeePayer | None = None,
    facilitator: Facilitator | None = None,
    assets: dict[Asset, AssetConfig] | None = None,
) -> ServiceContainer:
    try:
        pricing = settings.pricing_config()
        upstream = settings.upstream_config()
        throttle_config = settings.throttle_config()
        reconciler_config = settings.reconciler_config()
    except ValueError as exc:
        raise ConfigError(str(exc), cause=exc) from exc
    if upstream.send_timeout >= settings.reservation_ttl_sec:
        # A send that outlives its hold can be broadcast without being charged.
        raise ConfigError(
            f"GM_RESERVATION_TTL_SEC ({settings.reservation_ttl_sec}) must exceed the signer and RPC "
            f"timeouts combined ({upstream.send_timeout:g}s)"
        )
    assets = assets or default_assets()

    ledger = ledger or await build_ledger(settings)
    rpc = rpc or SolanaRpcClient(upstream)
    signer = signer or KoraFeePayer(rpc, upstream, method=settings.kora_method)
    facilitator = facilitator or HTTPFacilitatorClient(upstream)

    verifier = PaymentVerifier(ledger, facilitator, pricing=pricing, upstream=upstream, assets=assets)
    gateway = MeteringGateway(ledger, signer, verifier, pricing=pricing, upstream=upstream, assets=assets)

    reconcilers: list[DepositReconciler] = []
    if reconciler_config.enabled:
        for asset in reconciler_config.watched_assets:
            reconcilers.append(
                DepositReconciler(
                    ledger,
                    rpc,
                    asset=asset,
                    pricing=pricing,
                    upstream=upstream,
                    config=reconciler_config,
                    assets=assets,
                )
            )

    logger.info(
        "Services built",
        ledger=type(ledger).__name__,
        reconcilers=[r.asset.value for r in reconcilers],
        throttle=throttle_config.enabled,
    )
    return ServiceContainer(
        ledger=ledger,
        rpc=rpc,
        signer=signer,
        facilitator=facilitator,
        verifier=verifier,
        gateway=gateway,
        throttle=RequestThrottle(throttle_config),
        pricing=pricing,
        upstream=upstream,
        assets=assets,
        reconcilers=reconcilers,
    )


__all__ = ["ServiceContainer", "build_ledger", "build_services"]
