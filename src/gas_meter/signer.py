from __future__ import annotations

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from .chain import SolanaRpcClient
from .config import UpstreamConfig
from .errors import UpstreamSigningError
from .logging import get_logger, redact_secret

logger = get_logger("gas_meter.signer")


class FeePayer(ABC):
    """Co-signs a caller's transaction as fee payer and broadcasts it."""

    @abstractmethod
    async def sign_and_broadcast(self, transaction: str) -> str:
        """Return the network signature; raise UpstreamSigningError / UpstreamBroadcastError."""

    async def close(self) -> None:
        return


class KoraFeePayer(FeePayer):
    """
    Kora fee-payer node.

    Kora signs but does not send: the signed transaction it returns is
    submitted through the RPC client.
    """

    def __init__(
        self,
        rpc: SolanaRpcClient,
        config: UpstreamConfig | None = None,
        *,
        method: str = "signTransaction",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        config = config or UpstreamConfig()
        self.rpc = rpc
        self.url = config.kora_url
        self.api_key = config.kora_api_key
        self.timeout_seconds = config.signer_timeout
        self.method = method
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        logger.debug("Fee payer configured", url=self.url, api_key=redact_secret(self.api_key))

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["x-api-key"] = self.api_key
        return h

    async def sign(self, transaction: str) -> str:
        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": self.method,
            "params": {"transaction": transaction},
        }
        try:
            async with session.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as exc:
            raise UpstreamSigningError("Fee payer timed out", cause=exc) from exc
        except aiohttp.ClientError as exc:
            raise UpstreamSigningError(f"Fee payer unreachable: {exc}", cause=exc) from exc

        if not text:
            raise UpstreamSigningError("Empty response from fee payer", upstream_status=status)
        try:
            body: Any = json.loads(text)
        except ValueError as exc:
            raise UpstreamSigningError(
                f"Invalid JSON from fee payer: {text[:100]}", upstream_status=status, cause=exc
            ) from exc
        if not isinstance(body, dict):
            raise UpstreamSigningError("Invalid response from fee payer", upstream_status=status)
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise UpstreamSigningError(message or "Fee payer error", upstream_status=status)
        if status >= 400:
            raise UpstreamSigningError(f"Fee payer HTTP {status}", upstream_status=status)

        result = body.get("result")
        signed = result.get("signed_transaction") if isinstance(result, dict) else None
        if not signed:
            raise UpstreamSigningError("No signed transaction from fee payer", upstream_status=status)
        return str(signed)

    async def sign_and_broadcast(self, transaction: str) -> str:
        signed = await self.sign(transaction)
        return await self.rpc.submit(signed)

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()


__all__ = ["FeePayer", "KoraFeePayer"]
