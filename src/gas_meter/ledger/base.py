"""
Ledger store contract.

Every balance mutation in the service goes through one of these primitives.
Implementations guarantee that mutations on a single project are
linearizable and that mutations on different projects do not block each
other; callers never coordinate locking themselves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from blake3 import blake3

from ..errors import ValidationError
from ..models import Asset, CreditResult, Project, Reservation, Tier


class LedgerStore(ABC):
    @abstractmethod
    async def create(
        self,
        *,
        name: str,
        tier: Tier = Tier.SPONSORED,
        email: str | None = None,
        website: str | None = None,
    ) -> Project:
        """Register a project with zero balances."""

    @abstractmethod
    async def get(self, project_id: str) -> Project:
        """Snapshot of a project; raises ProjectNotFoundError."""

    @abstractmethod
    async def list_projects(self) -> list[Project]:
        ...

    @abstractmethod
    async def set_active(self, project_id: str, active: bool) -> Project:
        ...

    @abstractmethod
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
        """
        Add `amount` to a balance.

        A `reference` that was already recorded makes the call a no-op that
        returns `applied=False`; the reference is recorded atomically with the
        credit it guards. `kind` ("deposit" or "payment") selects which
        observability snapshot is updated.
        """

    @abstractmethod
    async def debit(self, project_id: str, asset: Asset, amount: int) -> int:
        """Subtract `amount`; raises InsufficientBalanceError without partial effects."""

    @abstractmethod
    async def reserve(self, project_id: str, asset: Asset, amount: int) -> Reservation:
        """Hold `amount` of the available balance for an in-flight relay."""

    @abstractmethod
    async def commit(self, reservation: Reservation, *, signature: str) -> Project:
        """
        Turn a hold into a debit for one broadcast transaction.

        Releases the hold, re-validates the balance independently of the
        earlier reservation, debits, increments `total_tx_count` and records
        `last_tx`. Raises InsufficientBalanceError if re-validation fails.
        """

    @abstractmethod
    async def release(self, reservation: Reservation) -> None:
        """Drop a hold without touching balances. Idempotent."""

    @abstractmethod
    async def has_reference(self, reference: str) -> bool:
        ...

    @abstractmethod
    async def get_cursor(self, watch_key: str) -> str | None:
        ...

    @abstractmethod
    async def set_cursor(self, watch_key: str, reference: str) -> None:
        ...

    async def close(self) -> None:
        return


def require_positive(amount: Any) -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError):
        raise ValidationError(f"amount must be an integer, got {amount!r}") from None
    if value != amount or value <= 0:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")
    return value


def reference_key(reference: str) -> bytes:
    """Fixed-width digest used as the primary key of applied references."""
    return blake3(reference.encode("utf-8")).digest()


__all__ = ["LedgerStore", "require_positive", "reference_key"]
