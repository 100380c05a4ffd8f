from __future__ import annotations

import asyncio
import random

import pytest

from gas_meter.errors import InsufficientBalanceError, ProjectNotFoundError, ValidationError
from gas_meter.ledger import MemoryLedgerStore, reference_key
from gas_meter.models import Asset, Tier


@pytest.mark.asyncio
async def test_create_starts_with_zero_balances(ledger) -> None:
    project = await ledger.create(name="Demo")

    assert project.id.startswith("proj_")
    assert project.balances == {Asset.NATIVE: 0, Asset.STABLE: 0}
    assert project.total_tx_count == 0
    assert project.active is True


@pytest.mark.asyncio
async def test_pay_as_you_go_id_prefix(ledger) -> None:
    project = await ledger.create(name="Demo", tier=Tier.PAY_AS_YOU_GO)

    assert project.id.startswith("payg_")
    assert project.tier is Tier.PAY_AS_YOU_GO


@pytest.mark.asyncio
async def test_create_requires_name(ledger) -> None:
    with pytest.raises(ValidationError):
        await ledger.create(name="  ")


@pytest.mark.asyncio
async def test_unknown_project(ledger) -> None:
    with pytest.raises(ProjectNotFoundError):
        await ledger.get("proj_missing")
    with pytest.raises(ProjectNotFoundError):
        await ledger.credit("proj_missing", Asset.NATIVE, 1)


@pytest.mark.asyncio
async def test_credit_and_debit(ledger) -> None:
    project = await ledger.create(name="Demo")

    result = await ledger.credit(project.id, Asset.NATIVE, 10_000)
    remaining = await ledger.debit(project.id, Asset.NATIVE, 4_000)

    assert result.applied is True
    assert result.balance_after == 10_000
    assert remaining == 6_000
    assert (await ledger.get(project.id)).balance(Asset.NATIVE) == 6_000


@pytest.mark.asyncio
async def test_insufficient_debit_leaves_state_unchanged(ledger) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 4_999)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.debit(project.id, Asset.NATIVE, 5_000)

    assert exc_info.value.required == 5_000
    assert exc_info.value.available == 4_999
    assert (await ledger.get(project.id)).balance(Asset.NATIVE) == 4_999


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 1.5, "10"])
async def test_non_positive_amounts_rejected(ledger, amount) -> None:
    project = await ledger.create(name="Demo")

    with pytest.raises(ValidationError):
        await ledger.credit(project.id, Asset.NATIVE, amount)
    with pytest.raises(ValidationError):
        await ledger.debit(project.id, Asset.NATIVE, amount)


@pytest.mark.asyncio
async def test_reference_credits_once(ledger) -> None:
    project = await ledger.create(name="Demo")

    first = await ledger.credit(project.id, Asset.NATIVE, 5_000, reference="deposit:native:sigA", kind="deposit")
    second = await ledger.credit(project.id, Asset.NATIVE, 5_000, reference="deposit:native:sigA", kind="deposit")

    assert first.applied is True
    assert second.applied is False
    assert second.balance_after == 5_000
    assert await ledger.has_reference("deposit:native:sigA")
    snapshot = await ledger.get(project.id)
    assert snapshot.last_deposit["reference"] == "deposit:native:sigA"


@pytest.mark.asyncio
async def test_concurrent_duplicate_credits_apply_once(ledger) -> None:
    project = await ledger.create(name="Demo")

    results = await asyncio.gather(
        *[ledger.credit(project.id, Asset.STABLE, 700, reference="payment:ref-1", kind="payment") for _ in range(10)]
    )

    assert sum(1 for r in results if r.applied) == 1
    assert (await ledger.get(project.id)).balance(Asset.STABLE) == 700


@pytest.mark.asyncio
async def test_reserve_holds_available_balance(ledger) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 5_000)

    reservation = await ledger.reserve(project.id, Asset.NATIVE, 5_000)
    with pytest.raises(InsufficientBalanceError):
        await ledger.reserve(project.id, Asset.NATIVE, 5_000)
    with pytest.raises(InsufficientBalanceError):
        await ledger.debit(project.id, Asset.NATIVE, 1)

    snapshot = await ledger.get(project.id)
    assert snapshot.balance(Asset.NATIVE) == 5_000
    assert snapshot.held[Asset.NATIVE] == 5_000
    assert snapshot.available(Asset.NATIVE) == 0

    await ledger.release(reservation)
    await ledger.release(reservation)
    assert (await ledger.get(project.id)).available(Asset.NATIVE) == 5_000


@pytest.mark.asyncio
async def test_commit_debits_and_counts(ledger) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 12_000)

    reservation = await ledger.reserve(project.id, Asset.NATIVE, 5_000)
    committed = await ledger.commit(reservation, signature="sig_1")

    assert committed.balance(Asset.NATIVE) == 7_000
    assert committed.held[Asset.NATIVE] == 0
    assert committed.total_tx_count == 1
    assert committed.last_tx["signature"] == "sig_1"


@pytest.mark.asyncio
async def test_commit_revalidates_balance(ledger, clock) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 5_000)

    stale = await ledger.reserve(project.id, Asset.NATIVE, 5_000)
    clock.advance(121)
    # The expired hold no longer protects the funds.
    await ledger.debit(project.id, Asset.NATIVE, 5_000)

    with pytest.raises(InsufficientBalanceError):
        await ledger.commit(stale, signature="sig_late")

    snapshot = await ledger.get(project.id)
    assert snapshot.balance(Asset.NATIVE) == 0
    assert snapshot.total_tx_count == 0


@pytest.mark.asyncio
async def test_expired_reservations_stop_counting(ledger, clock) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 5_000)

    await ledger.reserve(project.id, Asset.NATIVE, 5_000)
    clock.advance(120)

    assert (await ledger.get(project.id)).available(Asset.NATIVE) == 5_000


@pytest.mark.asyncio
async def test_concurrent_reservations_on_one_unit(ledger) -> None:
    project = await ledger.create(name="Demo")
    await ledger.credit(project.id, Asset.NATIVE, 5_000)

    results = await asyncio.gather(
        *[ledger.reserve(project.id, Asset.NATIVE, 5_000) for _ in range(5)],
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert sum(1 for r in results if isinstance(r, InsufficientBalanceError)) == 4


@pytest.mark.asyncio
async def test_projects_do_not_share_balances(ledger) -> None:
    a = await ledger.create(name="A")
    b = await ledger.create(name="B")
    await ledger.credit(a.id, Asset.NATIVE, 5_000)

    await ledger.reserve(a.id, Asset.NATIVE, 5_000)

    assert (await ledger.get(b.id)).balance(Asset.NATIVE) == 0
    with pytest.raises(InsufficientBalanceError):
        await ledger.reserve(b.id, Asset.NATIVE, 1)


@pytest.mark.asyncio
async def test_random_sequences_never_go_negative(ledger) -> None:
    project = await ledger.create(name="Demo")
    rng = random.Random(7)

    async def step() -> None:
        amount = rng.randint(1, 9_000)
        if rng.random() < 0.5:
            await ledger.credit(project.id, Asset.NATIVE, amount)
        else:
            try:
                await ledger.debit(project.id, Asset.NATIVE, amount)
            except InsufficientBalanceError:
                pass
        assert (await ledger.get(project.id)).balance(Asset.NATIVE) >= 0

    await asyncio.gather(*[step() for _ in range(200)])


@pytest.mark.asyncio
async def test_set_active_and_cursor(ledger) -> None:
    project = await ledger.create(name="Demo")

    updated = await ledger.set_active(project.id, False)
    await ledger.set_cursor("native:W", "sig_9")

    assert updated.active is False
    assert await ledger.get_cursor("native:W") == "sig_9"
    assert await ledger.get_cursor("stable:W") is None


@pytest.mark.asyncio
async def test_snapshots_are_copies(ledger) -> None:
    project = await ledger.create(name="Demo")

    project.balances[Asset.NATIVE] = 1_000_000

    assert (await ledger.get(project.id)).balance(Asset.NATIVE) == 0


def test_reference_key_is_fixed_width() -> None:
    assert len(reference_key("deposit:native:abc")) == 32
    assert reference_key("a") != reference_key("b")


def test_memory_store_default_ttl() -> None:
    store = MemoryLedgerStore()

    assert store._reservation_ttl == 120.0
