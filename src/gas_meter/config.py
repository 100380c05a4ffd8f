"""
Configuration system for gas-meter.

This module provides typed configuration classes with:
- Dataclass-based settings with validation
- Environment variable loading
- Sensible defaults with override capability
"""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from .models import Asset


# =============================================================================
# Asset Configuration
# =============================================================================

# Solana mainnet defaults.
SPONSOR_WALLET = "F6i99DWMEMZtLDKnWGx1FW6drkqvtDnXWLHxgrwzVdWD"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SOLANA_MAINNET = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
MEMO_PROGRAM_IDS = (
    "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
    "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo",
)


@dataclass
class AssetConfig:
    """Display and on-chain identity of one balance currency."""

    asset: Asset
    symbol: str
    decimals: int
    mint: Optional[str] = None

    def __post_init__(self):
        if self.decimals < 0:
            raise ValueError("decimals cannot be negative")
        if self.asset is Asset.STABLE and not self.mint:
            raise ValueError("stablecoin asset requires a mint address")

    def to_display(self, minor_units: int) -> float:
        return minor_units / (10 ** self.decimals)


def default_assets() -> dict[Asset, AssetConfig]:
    return {
        Asset.NATIVE: AssetConfig(asset=Asset.NATIVE, symbol="SOL", decimals=9),
        Asset.STABLE: AssetConfig(asset=Asset.STABLE, symbol="USDC", decimals=6, mint=USDC_MINT),
    }


# =============================================================================
# Pricing Configuration
# =============================================================================

@dataclass
class PricingConfig:
    """Unit costs, conversion rate and x402 pricing."""

    # Charged per sponsored transaction, in minor units of each asset.
    unit_cost_native: int = 5000
    unit_cost_stable: int = 500

    # Native minor units credited per stablecoin minor unit (1 USDC -> 10M lamports).
    stable_to_native_rate: Decimal = Decimal("10")

    # x402 top-up price per unit, in stablecoin minor units ($0.001).
    unit_price_stable: int = 1000
    payment_batch_units: int = 100
    max_payment_units: int = 10_000

    def __post_init__(self):
        if not isinstance(self.stable_to_native_rate, Decimal):
            self.stable_to_native_rate = Decimal(str(self.stable_to_native_rate))
        if self.unit_cost_native <= 0 or self.unit_cost_stable <= 0:
            raise ValueError("unit costs must be positive")
        if self.stable_to_native_rate <= 0:
            raise ValueError("stable_to_native_rate must be positive")
        if self.unit_price_stable <= 0:
            raise ValueError("unit_price_stable must be positive")
        if self.payment_batch_units <= 0 or self.max_payment_units < self.payment_batch_units:
            raise ValueError("payment batch must be positive and within max_payment_units")

    def unit_cost(self, asset: Asset) -> int:
        if asset is Asset.STABLE:
            return self.unit_cost_stable
        return self.unit_cost_native

    def stable_to_native(self, stable_minor: int) -> int:
        """floor(X * rate); never rounds in the depositor's favour."""
        value = (Decimal(int(stable_minor)) * self.stable_to_native_rate).to_integral_value(rounding=ROUND_FLOOR)
        return int(value)

    def estimated_units(self, balances: dict[Asset, int]) -> dict[Asset, int]:
        return {asset: max(0, int(balances.get(asset, 0))) // self.unit_cost(asset) for asset in Asset}

    def price_for_units(self, unit_count: int) -> int:
        return int(unit_count) * self.unit_price_stable

    def usd_for_units(self, unit_count: int, stable_decimals: int = 6) -> str:
        amount = Decimal(self.price_for_units(unit_count)) / (Decimal(10) ** stable_decimals)
        return f"{amount:.4f}"


# =============================================================================
# Reconciler Configuration
# =============================================================================

@dataclass
class ReconcilerConfig:
    """Deposit polling settings shared by every watched asset."""

    enabled: bool = True
    interval_seconds: float = 30.0
    page_limit: int = 20
    watched_assets: tuple[Asset, ...] = (Asset.NATIVE, Asset.STABLE)

    def __post_init__(self):
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if not 1 <= self.page_limit <= 1000:
            raise ValueError("page_limit must be within [1, 1000]")


# =============================================================================
# Throttle Configuration
# =============================================================================

@dataclass
class ThrottleConfig:
    """Request budgets per minute. 0 disables a budget."""

    enabled: bool = True
    requests_per_minute: int = 100
    relay_requests_per_minute: int = 20

    def __post_init__(self):
        if self.requests_per_minute < 0 or self.relay_requests_per_minute < 0:
            raise ValueError("rate limits cannot be negative")


# =============================================================================
# Upstream Configuration
# =============================================================================

@dataclass
class UpstreamConfig:
    """Endpoints of the external collaborators."""

    rpc_url: str = field(
        default_factory=lambda: os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
    )
    kora_url: str = field(default_factory=lambda: os.getenv("KORA_URL", "http://127.0.0.1:8080"))
    kora_api_key: Optional[str] = field(default_factory=lambda: os.getenv("KORA_API_KEY"))
    facilitator_url: str = field(
        default_factory=lambda: os.getenv("FACILITATOR_URL", "https://x402.org/facilitator")
    )
    network: str = SOLANA_MAINNET
    sponsor_wallet: str = SPONSOR_WALLET

    rpc_timeout: float = 15.0
    signer_timeout: float = 30.0
    facilitator_timeout: float = 30.0

    def __post_init__(self):
        for name in ("rpc_timeout", "signer_timeout", "facilitator_timeout"):
            value = getattr(self, name)
            if value <= 0 or math.isinf(value):
                raise ValueError(f"{name} must be a positive finite number")
        if not self.sponsor_wallet:
            raise ValueError("sponsor_wallet is required")

    @property
    def send_timeout(self) -> float:
        """Longest a sign-and-broadcast call can take: signer round trip plus RPC submit."""
        return self.signer_timeout + self.rpc_timeout


def load_env(path: Optional[str] = None, *, override: bool = False) -> bool:
    """
    Load environment variables from a .env file.

    Args:
        path: Optional path to a .env file. If not provided, uses find_dotenv().
        override: Whether to override existing environment variables.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    env_path = path or find_dotenv(usecwd=True)
    if not env_path:
        return False
    return load_dotenv(env_path, override=override)


__all__ = [
    "AssetConfig",
    "PricingConfig",
    "ReconcilerConfig",
    "ThrottleConfig",
    "UpstreamConfig",
    "default_assets",
    "load_env",
    "SPONSOR_WALLET",
    "USDC_MINT",
    "SOLANA_MAINNET",
    "MEMO_PROGRAM_IDS",
]
