"""
Funding policies.

A policy turns a project's available balances into the asset a relay is
charged against, or None when no source covers one unit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .config import PricingConfig
from .models import Asset, Tier


class FundingPolicy(ABC):
    tier: Tier
    sources: tuple[Asset, ...] = ()

    def __init__(self, pricing: PricingConfig) -> None:
        self.pricing = pricing

    def select_source(self, balances: dict[Asset, int]) -> Asset | None:
        for asset in self.sources:
            if int(balances.get(asset, 0)) >= self.pricing.unit_cost(asset):
                return asset
        return None

    @property
    @abstractmethod
    def shortfall_asset(self) -> Asset:
        """Asset a caller is asked to deposit when nothing covers a unit."""


class SponsoredPolicy(FundingPolicy):
    tier = Tier.SPONSORED
    sources = (Asset.NATIVE,)

    @property
    def shortfall_asset(self) -> Asset:
        return Asset.NATIVE


class PayAsYouGoPolicy(FundingPolicy):
    tier = Tier.PAY_AS_YOU_GO
    # Native first, stablecoin second.
    sources = (Asset.NATIVE, Asset.STABLE)

    @property
    def shortfall_asset(self) -> Asset:
        return Asset.STABLE


_POLICIES: dict[Tier, type[FundingPolicy]] = {
    Tier.SPONSORED: SponsoredPolicy,
    Tier.PAY_AS_YOU_GO: PayAsYouGoPolicy,
}


def policy_for(tier: Tier, pricing: PricingConfig) -> FundingPolicy:
    return _POLICIES[Tier.parse(tier)](pricing)


__all__ = ["FundingPolicy", "SponsoredPolicy", "PayAsYouGoPolicy", "policy_for"]
