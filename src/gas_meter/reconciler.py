"""
Deposit Reconciler.

Polls the network for activity on the sponsor's receiving address of one
asset, matches deposits to projects through the attached memo and credits
them idempotently. One reconciler runs per watched asset.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from .chain import SolanaRpcClient
from .config import AssetConfig, PricingConfig, ReconcilerConfig, UpstreamConfig, default_assets
from .errors import GasMeterError, ProjectNotFoundError, ReconciliationTransientError
from .ledger import LedgerStore
from .logging import DepositLog, get_logger
from .models import ActivityEntry, Asset

logger = get_logger("gas_meter.reconciler")


@dataclass(frozen=True)
class ReconcileReport:
    asset: Asset
    scanned: int = 0
    credited: int = 0
    skipped: int = 0
    cursor: str | None = None


class DepositReconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        rpc: SolanaRpcClient,
        *,
        asset: Asset,
        pricing: PricingConfig | None = None,
        upstream: UpstreamConfig | None = None,
        config: ReconcilerConfig | None = None,
        assets: dict[Asset, AssetConfig] | None = None,
    ) -> None:
        self.ledger = ledger
        self.rpc = rpc
        self.asset = asset
        self.pricing = pricing or PricingConfig()
        self.upstream = upstream or UpstreamConfig()
        self.config = config or ReconcilerConfig()
        self.asset_config = (assets or default_assets())[asset]
        self._address: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def watch_key(self) -> str:
        return f"{self.asset.value}:{self.upstream.sponsor_wallet}"

    async def receiving_address(self) -> str | None:
        if self._address is None:
            if self.asset is Asset.NATIVE:
                self._address = self.upstream.sponsor_wallet
            else:
                self._address = await self.rpc.resolve_token_account(
                    self.upstream.sponsor_wallet, str(self.asset_config.mint)
                )
        return self._address

    def credit_for(self, deposited: int) -> tuple[Asset, int]:
        """Ledger asset and amount a deposit of `deposited` minor units is worth."""
        if self.asset is Asset.NATIVE:
            return Asset.NATIVE, deposited
        return Asset.NATIVE, self.pricing.stable_to_native(deposited)

    async def _collect(self, address: str, cursor: str | None) -> list[ActivityEntry]:
        """
        Entries newer than `cursor`, newest first.

        Pages back with `before` until the cursor shows up or a page comes back
        short. Without a cursor only the newest page is read.
        """
        collected: list[ActivityEntry] = []
        before: str | None = None
        while True:
            page = await self.rpc.get_recent_activity(
                address,
                asset=self.asset,
                owner=self.upstream.sponsor_wallet,
                mint=self.asset_config.mint,
                limit=self.config.page_limit,
                until=cursor,
                before=before,
            )
            for entry in page:
                if entry.signature == cursor:
                    return collected
                collected.append(entry)
            if cursor is None or len(page) < self.config.page_limit or page[-1].signature == before:
                return collected
            before = page[-1].signature

    async def run_once(self) -> ReconcileReport:
        address = await self.receiving_address()
        if not address:
            logger.warning("No receiving address for asset", asset=self.asset.value)
            return ReconcileReport(asset=self.asset)

        cursor = await self.ledger.get_cursor(self.watch_key)
        entries = await self._collect(address, cursor)

        scanned = credited = skipped = 0
        # Oldest first, so `last_deposit` ends on the newest credit.
        for entry in reversed(entries):
            scanned += 1
            if await self._process(entry):
                credited += 1
            else:
                skipped += 1

        if entries:
            cursor = entries[0].signature
            await self.ledger.set_cursor(self.watch_key, cursor)

        if scanned:
            logger.info(
                "Deposit scan complete",
                asset=self.asset.value,
                scanned=scanned,
                credited=credited,
                skipped=skipped,
                cursor=cursor,
            )
        return ReconcileReport(asset=self.asset, scanned=scanned, credited=credited, skipped=skipped, cursor=cursor)

    async def _process(self, entry: ActivityEntry) -> bool:
        if not entry.ok:
            return False
        project_id = entry.memo.strip() if isinstance(entry.memo, str) else ""
        if not project_id:
            return False
        try:
            await self.ledger.get(project_id)
        except ProjectNotFoundError:
            logger.debug("Memo does not name a project", signature=entry.signature, memo=project_id)
            return False

        try:
            deposited = int(entry.balance_deltas.get(self.asset, 0))
        except (TypeError, ValueError):
            logger.warning("Malformed balance delta", signature=entry.signature)
            return False
        if deposited <= 0:
            return False

        credited_asset, amount = self.credit_for(deposited)
        if amount <= 0:
            return False

        result = await self.ledger.credit(
            project_id,
            credited_asset,
            amount,
            reference=f"deposit:{self.asset.value}:{entry.signature}",
            kind="deposit",
            detail={
                "signature": entry.signature,
                "depositedAsset": self.asset.value,
                "deposited": deposited,
            },
        )
        if not result.applied:
            logger.info("Deposit already credited", signature=entry.signature, project_id=project_id)
            return False

        logger.log_deposit(
            DepositLog(
                project_id=project_id,
                asset=self.asset.value,
                signature=entry.signature,
                deposited=deposited,
                credited=amount,
                credited_asset=credited_asset.value,
            )
        )
        return True

    async def run_forever(self) -> None:
        while True:
            try:
                with logger.bind(asset=self.asset.value, watch_key=self.watch_key):
                    await self.run_once()
            except ReconciliationTransientError as exc:
                logger.warning("Deposit scan failed, retrying next cycle", asset=self.asset.value, error=str(exc))
            except GasMeterError as exc:
                logger.log_error(exc, "Deposit scan failed", asset=self.asset.value)
            except Exception as exc:
                # The poller keeps running; the next cycle starts from the same cursor.
                logger.log_error(exc, "Unexpected deposit scan failure", asset=self.asset.value)
            await asyncio.sleep(self.config.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name=f"reconciler:{self.asset.value}")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


__all__ = ["ReconcileReport", "DepositReconciler"]
