from __future__ import annotations

import asyncio

import pytest

from gas_meter.errors import (
    InsufficientBalanceError,
    PaymentVerificationFailedError,
    ProjectInactiveError,
    ProjectNotFoundError,
    UpstreamBroadcastError,
    UpstreamSigningError,
    ValidationError,
)
from gas_meter.gateway import FundingShortfall, MeteringGateway, RelayResult, validate_transaction
from gas_meter.models import Asset, Tier
from gas_meter.payments import PaymentVerifier
from gas_meter.reconciler import DepositReconciler
from tests._testkit import SPONSOR, FakeFacilitator, FakeRpc, FakeSigner, deposit, make_proof, make_tx


def build_gateway(ledger, pricing, upstream, *, signer=None, facilitator=None) -> MeteringGateway:
    verifier = PaymentVerifier(ledger, facilitator or FakeFacilitator(), pricing=pricing, upstream=upstream)
    return MeteringGateway(ledger, signer or FakeSigner(), verifier, pricing=pricing, upstream=upstream)


async def funded_project(ledger, *, tier=Tier.SPONSORED, native=0, stable=0):
    project = await ledger.create(name="Demo", tier=tier)
    if native:
        await ledger.credit(project.id, Asset.NATIVE, native)
    if stable:
        await ledger.credit(project.id, Asset.STABLE, stable)
    return project


class TestValidation:
    @pytest.mark.parametrize("transaction", ["", "   ", "not base64!!", None, make_tx(2_000)])
    def test_rejects_bad_payloads(self, transaction):
        with pytest.raises(ValidationError):
            validate_transaction(transaction)

    def test_accepts_wire_sized_payload(self):
        assert len(validate_transaction(make_tx(1_232))) == 1_232

    @pytest.mark.asyncio
    async def test_missing_project_id(self, ledger, pricing, upstream):
        gateway = build_gateway(ledger, pricing, upstream)

        with pytest.raises(ValidationError):
            await gateway.relay("", make_tx())

    @pytest.mark.asyncio
    async def test_unknown_project(self, ledger, pricing, upstream):
        gateway = build_gateway(ledger, pricing, upstream)

        with pytest.raises(ProjectNotFoundError):
            await gateway.relay("proj_missing", make_tx())

    @pytest.mark.asyncio
    async def test_inactive_project(self, ledger, pricing, upstream):
        signer = FakeSigner()
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, native=5_000)
        await ledger.set_active(project.id, False)

        with pytest.raises(ProjectInactiveError):
            await gateway.relay(project.id, make_tx())

        assert signer.calls == []


class TestRelay:
    @pytest.mark.asyncio
    async def test_success_debits_one_unit(self, ledger, pricing, upstream):
        signer = FakeSigner()
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, native=12_000)

        result = await gateway.relay(project.id, make_tx())

        assert isinstance(result, RelayResult)
        assert result.signature == "5ig1"
        assert result.funding_source is Asset.NATIVE
        assert result.charged == 5_000
        assert result.remaining_balance == 7_000
        snapshot = await ledger.get(project.id)
        assert snapshot.total_tx_count == 1
        assert snapshot.held[Asset.NATIVE] == 0
        assert signer.calls == [make_tx()]

    @pytest.mark.asyncio
    async def test_sponsored_shortfall(self, ledger, pricing, upstream):
        signer = FakeSigner()
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, native=1_000, stable=10_000)

        result = await gateway.relay(project.id, make_tx())

        assert isinstance(result, FundingShortfall)
        assert result.required_asset is Asset.NATIVE
        assert result.required_amount == 4_000
        assert result.receiving_address == SPONSOR
        assert result.attached_note == project.id
        assert result.payment_requirement["accepts"][0]["payTo"] == SPONSOR
        assert signer.calls == []

    @pytest.mark.asyncio
    async def test_pay_as_you_go_prefers_native_then_stable(self, ledger, pricing, upstream):
        gateway = build_gateway(ledger, pricing, upstream)
        project = await funded_project(ledger, tier=Tier.PAY_AS_YOU_GO, native=5_000, stable=500)

        first = await gateway.relay(project.id, make_tx())
        second = await gateway.relay(project.id, make_tx())
        third = await gateway.relay(project.id, make_tx())

        assert first.funding_source is Asset.NATIVE
        assert second.funding_source is Asset.STABLE
        assert second.charged == 500
        assert isinstance(third, FundingShortfall)
        assert third.required_asset is Asset.STABLE
        assert third.required_amount == 500
        assert (await ledger.get(project.id)).total_tx_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [UpstreamSigningError("fee payer down"), UpstreamBroadcastError("blockhash not found"), asyncio.TimeoutError()],
    )
    async def test_failed_send_leaves_balance(self, ledger, pricing, upstream, error):
        gateway = build_gateway(ledger, pricing, upstream, signer=FakeSigner(error=error))
        project = await funded_project(ledger, native=5_000)

        with pytest.raises(type(error)):
            await gateway.relay(project.id, make_tx())

        snapshot = await ledger.get(project.id)
        assert snapshot.balance(Asset.NATIVE) == 5_000
        assert snapshot.available(Asset.NATIVE) == 5_000
        assert snapshot.total_tx_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_relays_on_one_unit(self, ledger, pricing, upstream):
        signer = FakeSigner(gate=asyncio.Event())
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, native=5_000)

        first = asyncio.create_task(gateway.relay(project.id, make_tx()))
        await signer.started.wait()
        with pytest.raises(InsufficientBalanceError) as exc_info:
            await gateway.relay(project.id, make_tx())
        signer.gate.set()
        result = await first

        assert result.remaining_balance == 0
        assert exc_info.value.funding["memo"] == project.id
        assert len(signer.calls) == 1
        snapshot = await ledger.get(project.id)
        assert snapshot.balance(Asset.NATIVE) == 0
        assert snapshot.total_tx_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_pay_as_you_go_falls_back_to_stable(self, ledger, pricing, upstream):
        signer = FakeSigner(gate=asyncio.Event())
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, tier=Tier.PAY_AS_YOU_GO, native=5_000, stable=500)

        first = asyncio.create_task(gateway.relay(project.id, make_tx()))
        await signer.started.wait()
        second = asyncio.create_task(gateway.relay(project.id, make_tx()))
        for _ in range(50):
            if len(signer.calls) == 2 or second.done():
                break
            await asyncio.sleep(0)
        signer.gate.set()
        results = [await first, await second]

        assert [r.funding_source for r in results] == [Asset.NATIVE, Asset.STABLE]
        assert results[1].charged == 500
        snapshot = await ledger.get(project.id)
        assert snapshot.balances == {Asset.NATIVE: 0, Asset.STABLE: 0}
        assert snapshot.total_tx_count == 2

    @pytest.mark.asyncio
    async def test_cancellation_releases_hold(self, ledger, pricing, upstream):
        signer = FakeSigner(gate=asyncio.Event())
        gateway = build_gateway(ledger, pricing, upstream, signer=signer)
        project = await funded_project(ledger, native=5_000)

        task = asyncio.create_task(gateway.relay(project.id, make_tx()))
        await signer.started.wait()
        assert (await ledger.get(project.id)).available(Asset.NATIVE) == 0
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        snapshot = await ledger.get(project.id)
        assert snapshot.balance(Asset.NATIVE) == 5_000
        assert snapshot.available(Asset.NATIVE) == 5_000


class TestPaymentOnRelay:
    @pytest.mark.asyncio
    async def test_proof_funds_then_relays(self, ledger, pricing, upstream):
        gateway = build_gateway(ledger, pricing, upstream)
        project = await funded_project(ledger)

        result = await gateway.relay(project.id, make_tx(), make_proof())

        assert isinstance(result, RelayResult)
        assert result.payment.applied is True
        assert result.payment.settled_units == 100
        assert result.remaining_balance == 495_000

    @pytest.mark.asyncio
    async def test_proof_ignored_when_funded(self, ledger, pricing, upstream):
        facilitator = FakeFacilitator()
        gateway = build_gateway(ledger, pricing, upstream, facilitator=facilitator)
        project = await funded_project(ledger, native=5_000)

        result = await gateway.relay(project.id, make_tx(), make_proof())

        assert result.payment is None
        assert facilitator.calls == []

    @pytest.mark.asyncio
    async def test_rejected_proof_sends_nothing(self, ledger, pricing, upstream):
        signer = FakeSigner()
        gateway = build_gateway(ledger, pricing, upstream, signer=signer, facilitator=FakeFacilitator(reason="expired"))
        project = await funded_project(ledger)

        with pytest.raises(PaymentVerificationFailedError):
            await gateway.relay(project.id, make_tx(), make_proof())

        assert signer.calls == []


@pytest.mark.asyncio
async def test_register_deposit_relay_scenario(ledger, pricing, upstream):
    signer = FakeSigner()
    gateway = build_gateway(ledger, pricing, upstream, signer=signer)
    rpc = FakeRpc()
    reconciler = DepositReconciler(ledger, rpc, asset=Asset.NATIVE, pricing=pricing, upstream=upstream)

    project = await ledger.create(name="Scenario")
    shortfall = await gateway.relay(project.id, make_tx())
    assert isinstance(shortfall, FundingShortfall)

    rpc.entries.insert(0, deposit("dep1", shortfall.attached_note, shortfall.required_amount))
    await reconciler.run_once()
    await reconciler.run_once()

    result = await gateway.relay(project.id, make_tx())
    assert result.remaining_balance == 0

    snapshot = await ledger.get(project.id)
    assert snapshot.balance(Asset.NATIVE) == 0
    assert snapshot.total_tx_count == 1
    assert isinstance(await gateway.relay(project.id, make_tx()), FundingShortfall)
