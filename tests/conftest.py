"""
Shared fixtures for gas-meter tests.

Fakes and builders live in `tests/_testkit.py`.
"""

from __future__ import annotations

import pytest

from gas_meter.config import PricingConfig, UpstreamConfig
from gas_meter.ledger import MemoryLedgerStore
from tests._testkit import SPONSOR, ManualClock


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger(clock: ManualClock) -> MemoryLedgerStore:
    return MemoryLedgerStore(clock=clock)


@pytest.fixture
def pricing() -> PricingConfig:
    return PricingConfig()


@pytest.fixture
def upstream() -> UpstreamConfig:
    return UpstreamConfig(
        rpc_url="http://rpc.test",
        kora_url="http://kora.test",
        kora_api_key="kora-test-key",
        facilitator_url="http://facilitator.test",
        sponsor_wallet=SPONSOR,
    )
