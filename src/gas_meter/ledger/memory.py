from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from ..errors import InsufficientBalanceError, ProjectNotFoundError, ValidationError
from ..models import Asset, CreditResult, Project, Reservation, Tier, empty_balances, generate_project_id
from .base import LedgerStore, require_positive


class MemoryLedgerStore(LedgerStore):
    """
    Process-local ledger guarded by one asyncio lock per project.

    Suitable for development and tests; state is lost on restart.
    """

    def __init__(
        self,
        *,
        reservation_ttl_sec: float = 120.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._reservation_ttl = float(reservation_ttl_sec)
        self._clock = clock
        self._projects: dict[str, Project] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._references: set[str] = set()
        self._cursors: dict[str, str] = {}
        self._reservations: dict[uuid.UUID, Reservation] = {}

    async def create(
        self,
        *,
        name: str,
        tier: Tier = Tier.SPONSORED,
        email: str | None = None,
        website: str | None = None,
    ) -> Project:
        if not (name or "").strip():
            raise ValidationError("Project name required")
        project_id = generate_project_id(tier)
        while project_id in self._projects:
            project_id = generate_project_id(tier)
        project = Project(
            id=project_id,
            name=name.strip(),
            tier=tier,
            email=email,
            website=website,
            created_at=self._clock(),
        )
        self._projects[project_id] = project
        self._locks[project_id] = asyncio.Lock()
        return self._snapshot(project)

    async def get(self, project_id: str) -> Project:
        return self._snapshot(self._require(project_id))

    async def list_projects(self) -> list[Project]:
        return [self._snapshot(project) for project in self._projects.values()]

    async def set_active(self, project_id: str, active: bool) -> Project:
        project = self._require(project_id)
        async with self._locks[project_id]:
            project.active = bool(active)
            return self._snapshot(project)

    async def credit(
        self,
        project_id: str,
        asset: Asset,
        amount: int,
        *,
        reference: str | None = None,
        kind: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> CreditResult:
        amount = require_positive(amount)
        project = self._require(project_id)
        async with self._locks[project_id]:
            if reference is not None and reference in self._references:
                return CreditResult(applied=False, balance_after=project.balance(asset))
            project.balances[asset] = project.balance(asset) + amount
            if reference is not None:
                self._references.add(reference)
            snapshot = {"asset": asset.value, "amount": amount, "reference": reference, "at": self._clock()}
            if detail:
                snapshot.update(detail)
            if kind == "deposit":
                project.last_deposit = snapshot
            elif kind == "payment":
                project.last_payment = snapshot
            return CreditResult(applied=True, balance_after=project.balance(asset))

    async def debit(self, project_id: str, asset: Asset, amount: int) -> int:
        amount = require_positive(amount)
        project = self._require(project_id)
        async with self._locks[project_id]:
            self._debit_locked(project, asset, amount)
            return project.balance(asset)

    async def reserve(self, project_id: str, asset: Asset, amount: int) -> Reservation:
        amount = require_positive(amount)
        project = self._require(project_id)
        async with self._locks[project_id]:
            available = project.balance(asset) - self._held(project_id, asset)
            if available < amount:
                raise InsufficientBalanceError(
                    "Insufficient balance: funds are committed to other in-flight requests"
                    if project.balance(asset) >= amount
                    else "Insufficient balance",
                    project_id=project_id,
                    asset=asset.value,
                    required=amount,
                    available=max(0, available),
                )
            reservation = Reservation(
                reservation_id=uuid.uuid4(),
                project_id=project_id,
                asset=asset,
                amount=amount,
                expires_at=self._clock() + self._reservation_ttl,
            )
            self._reservations[reservation.reservation_id] = reservation
            return reservation

    async def commit(self, reservation: Reservation, *, signature: str) -> Project:
        project = self._require(reservation.project_id)
        async with self._locks[reservation.project_id]:
            self._reservations.pop(reservation.reservation_id, None)
            self._debit_locked(project, reservation.asset, reservation.amount)
            project.total_tx_count += 1
            project.last_tx = {
                "signature": signature,
                "asset": reservation.asset.value,
                "amount": reservation.amount,
                "at": self._clock(),
            }
            return self._snapshot(project)

    async def release(self, reservation: Reservation) -> None:
        self._reservations.pop(reservation.reservation_id, None)

    async def has_reference(self, reference: str) -> bool:
        return reference in self._references

    async def get_cursor(self, watch_key: str) -> str | None:
        return self._cursors.get(watch_key)

    async def set_cursor(self, watch_key: str, reference: str) -> None:
        self._cursors[watch_key] = reference

    def _require(self, project_id: str) -> Project:
        project = self._projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id=project_id)
        return project

    def _held(self, project_id: str, asset: Asset) -> int:
        now = self._clock()
        expired = [rid for rid, r in self._reservations.items() if r.expired(now)]
        for rid in expired:
            del self._reservations[rid]
        return sum(
            r.amount
            for r in self._reservations.values()
            if r.project_id == project_id and r.asset is asset
        )

    def _debit_locked(self, project: Project, asset: Asset, amount: int) -> None:
        available = project.balance(asset) - self._held(project.id, asset)
        if available < amount:
            raise InsufficientBalanceError(
                project_id=project.id,
                asset=asset.value,
                required=amount,
                available=max(0, available),
            )
        project.balances[asset] = project.balance(asset) - amount

    def _snapshot(self, project: Project) -> Project:
        held = empty_balances()
        for asset in Asset:
            held[asset] = self._held(project.id, asset)
        return replace(
            project,
            balances=dict(project.balances),
            held=held,
            last_deposit=dict(project.last_deposit) if project.last_deposit else None,
            last_payment=dict(project.last_payment) if project.last_payment else None,
            last_tx=dict(project.last_tx) if project.last_tx else None,
        )


__all__ = ["MemoryLedgerStore"]
