"""
Domain types shared by the ledger, reconciler, verifier and gateway.
"""

from __future__ import annotations

import secrets
import string
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Asset(str, Enum):
    """Balance currencies a project can hold."""

    NATIVE = "native"
    STABLE = "stable"

    @classmethod
    def parse(cls, raw: Any) -> Asset:
        if isinstance(raw, Asset):
            return raw
        value = str(raw or "").strip().lower()
        aliases = {"sol": cls.NATIVE, "lamports": cls.NATIVE, "usdc": cls.STABLE}
        if value in aliases:
            return aliases[value]
        return cls(value)


class Tier(str, Enum):
    """Funding policy a project was registered under."""

    SPONSORED = "sponsored"
    PAY_AS_YOU_GO = "pay-as-you-go"

    @classmethod
    def parse(cls, raw: Any) -> Tier:
        if isinstance(raw, Tier):
            return raw
        value = str(raw or "").strip().lower()
        # Older records used "payg" and "free" for the pay-as-you-go tier.
        if value in {"payg", "free", "pay_as_you_go"}:
            return cls.PAY_AS_YOU_GO
        if value in {"", "gasless"}:
            return cls.SPONSORED
        return cls(value)

    @property
    def id_prefix(self) -> str:
        return "payg_" if self is Tier.PAY_AS_YOU_GO else "proj_"


def _base36(value: int) -> str:
    alphabet = string.digits + string.ascii_lowercase
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(alphabet[rem])
    return "".join(reversed(out))


def generate_project_id(tier: Tier) -> str:
    """`proj_<ms base36><5 random>` / `payg_<...>`."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(secrets.choice(alphabet) for _ in range(5))
    return f"{tier.id_prefix}{_base36(int(time.time() * 1000))}{suffix}"


def empty_balances() -> dict[Asset, int]:
    return {asset: 0 for asset in Asset}


@dataclass
class Project:
    """Identity and accounting root for one caller."""

    id: str
    name: str
    tier: Tier = Tier.SPONSORED
    balances: dict[Asset, int] = field(default_factory=empty_balances)
    held: dict[Asset, int] = field(default_factory=empty_balances)
    total_tx_count: int = 0
    active: bool = True
    email: str | None = None
    website: str | None = None
    created_at: float = field(default_factory=time.time)

    # Observability snapshots; no invariant depends on these.
    last_deposit: dict[str, Any] | None = None
    last_payment: dict[str, Any] | None = None
    last_tx: dict[str, Any] | None = None

    def balance(self, asset: Asset) -> int:
        return int(self.balances.get(asset, 0))

    def available(self, asset: Asset) -> int:
        return self.balance(asset) - int(self.held.get(asset, 0))

    def available_balances(self) -> dict[Asset, int]:
        return {asset: self.available(asset) for asset in Asset}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "tier": self.tier.value,
            "balances": {asset.value: self.balance(asset) for asset in Asset},
            "totalTxCount": self.total_tx_count,
            "active": self.active,
            "email": self.email,
            "website": self.website,
            "createdAt": self.created_at,
            "lastDeposit": self.last_deposit,
            "lastPayment": self.last_payment,
            "lastTx": self.last_tx,
        }


@dataclass(frozen=True)
class CreditResult:
    """Outcome of `LedgerStore.credit`; `applied=False` means the reference was already recorded."""

    applied: bool
    balance_after: int


@dataclass(frozen=True)
class Reservation:
    reservation_id: uuid.UUID
    project_id: str
    asset: Asset
    amount: int
    expires_at: float

    def expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


@dataclass(frozen=True)
class FundingRequirement:
    """How much external payment covers a shortfall; never persisted."""

    unit_count: int
    asset_price: int


@dataclass(frozen=True)
class ActivityEntry:
    """One externally-ordered event touching the sponsor's receiving address."""

    signature: str
    ok: bool
    balance_deltas: dict[Asset, int] = field(default_factory=dict)
    memo: str | None = None
    block_time: int | None = None


__all__ = [
    "Asset",
    "Tier",
    "Project",
    "CreditResult",
    "Reservation",
    "FundingRequirement",
    "ActivityEntry",
    "generate_project_id",
    "empty_balances",
]
