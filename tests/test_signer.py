from __future__ import annotations

import asyncio
import json

import aiohttp
import pytest

from gas_meter.config import UpstreamConfig
from gas_meter.errors import UpstreamSigningError
from gas_meter.signer import KoraFeePayer
from tests._testkit import FakeRpc, make_tx


class _FakeResponse:
    def __init__(self, status: int, text: str) -> None:
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        _ = (exc_type, exc, tb)
        return False


class _FakeSession:
    closed = False

    def __init__(self, response=None, *, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    def post(self, url, *, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def _payer(session) -> tuple[KoraFeePayer, FakeRpc]:
    rpc = FakeRpc()
    config = UpstreamConfig(kora_url="http://kora.test", kora_api_key="kora-key", signer_timeout=3)
    return KoraFeePayer(rpc, config, session=session), rpc


@pytest.mark.asyncio
async def test_signs_then_submits():
    body = {"jsonrpc": "2.0", "id": 1, "result": {"signed_transaction": "c2lnbmVk"}}
    session = _FakeSession(_FakeResponse(200, json.dumps(body)))
    payer, rpc = _payer(session)

    signature = await payer.sign_and_broadcast(make_tx())

    assert signature == "sig_1"
    assert rpc.submitted == ["c2lnbmVk"]
    request = session.requests[0]
    assert request["headers"]["x-api-key"] == "kora-key"
    assert request["json"]["method"] == "signTransaction"
    assert request["json"]["params"] == {"transaction": make_tx()}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,text",
    [
        (200, ""),
        (200, "<html>bad gateway</html>"),
        (200, json.dumps({"error": {"code": -32000, "message": "fee payer out of funds"}})),
        (503, json.dumps({"result": {"signed_transaction": "x"}})),
        (200, json.dumps({"result": {}})),
        (200, json.dumps([1, 2])),
    ],
)
async def test_bad_responses_are_signing_errors(status, text):
    payer, rpc = _payer(_FakeSession(_FakeResponse(status, text)))

    with pytest.raises(UpstreamSigningError):
        await payer.sign_and_broadcast(make_tx())

    assert rpc.submitted == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [asyncio.TimeoutError(), aiohttp.ClientConnectionError("refused")])
async def test_transport_failures_are_signing_errors(error):
    payer, rpc = _payer(_FakeSession(error=error))

    with pytest.raises(UpstreamSigningError):
        await payer.sign_and_broadcast(make_tx())

    assert rpc.submitted == []


@pytest.mark.asyncio
async def test_error_message_is_kept():
    text = json.dumps({"error": {"message": "transaction not allowed"}})
    payer, _ = _payer(_FakeSession(_FakeResponse(200, text)))

    with pytest.raises(UpstreamSigningError) as exc_info:
        await payer.sign(make_tx())

    assert exc_info.value.message == "transaction not allowed"
    assert exc_info.value.upstream_status == 200
