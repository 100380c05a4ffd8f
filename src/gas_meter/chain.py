"""
Solana JSON-RPC adapter.

Only the handful of calls the service needs: recent activity for a watched
address (deposit discovery), token account lookup, and broadcast of a signed
transaction. Parsing helpers are module-level so they can be exercised on
recorded RPC payloads without a network.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import aiohttp

from .config import MEMO_PROGRAM_IDS, UpstreamConfig
from .errors import ReconciliationTransientError, UpstreamBroadcastError
from .logging import get_logger
from .models import ActivityEntry, Asset

logger = get_logger("gas_meter.chain")


class RpcError(Exception):
    """Transport, HTTP or JSON-RPC level failure of a single call."""

    def __init__(self, message: str, *, rpc_code: int | None = None, http_status: int | None = None):
        super().__init__(message)
        self.rpc_code = rpc_code
        self.http_status = http_status


class SolanaRpcClient:
    def __init__(
        self,
        config: UpstreamConfig | None = None,
        *,
        url: str | None = None,
        timeout_seconds: float | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        config = config or UpstreamConfig()
        self.url = url or config.rpc_url
        self.timeout_seconds = timeout_seconds or config.rpc_timeout
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _call(self, method: str, params: list[Any]) -> Any:
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            async with session.post(
                self.url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise RpcError(f"{method}: HTTP {response.status} {text[:200]}", http_status=response.status)
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise RpcError(f"{method}: {type(exc).__name__}: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcError(f"{method}: unexpected response body")
        error = body.get("error")
        if error:
            if isinstance(error, dict):
                raise RpcError(f"{method}: {error.get('message') or 'RPC error'}", rpc_code=error.get("code"))
            raise RpcError(f"{method}: {error}")
        return body.get("result")

    async def resolve_token_account(self, owner: str, mint: str) -> str | None:
        try:
            result = await self._call(
                "getTokenAccountsByOwner",
                [owner, {"mint": mint}, {"encoding": "jsonParsed"}],
            )
        except RpcError as exc:
            raise ReconciliationTransientError(f"token account lookup failed: {exc}", cause=exc) from exc
        accounts = (result or {}).get("value") or []
        if not accounts:
            return None
        return accounts[0].get("pubkey")

    async def get_recent_activity(
        self,
        address: str,
        *,
        asset: Asset = Asset.NATIVE,
        owner: str | None = None,
        mint: str | None = None,
        limit: int = 20,
        until: str | None = None,
        before: str | None = None,
    ) -> list[ActivityEntry]:
        """
        Events touching `address`, newest first.

        `before` starts the page below that signature, for paging back to `until`.
        For the stablecoin, `address` is the token account and `owner`/`mint`
        identify it inside token balance tables. Any listing or detail fetch
        failure raises ReconciliationTransientError so the caller keeps its cursor.
        """
        options: dict[str, Any] = {"limit": int(limit)}
        if until:
            options["until"] = until
        if before:
            options["before"] = before
        try:
            signatures = await self._call("getSignaturesForAddress", [address, options])
        except RpcError as exc:
            raise ReconciliationTransientError(f"activity listing failed: {exc}", cause=exc) from exc
        if not isinstance(signatures, list):
            raise ReconciliationTransientError("activity listing returned a non-list result")

        entries: list[ActivityEntry] = []
        for item in signatures:
            if not isinstance(item, dict) or not item.get("signature"):
                continue
            signature = str(item["signature"])
            if item.get("err") is not None:
                entries.append(ActivityEntry(signature=signature, ok=False, block_time=item.get("blockTime")))
                continue
            try:
                tx = await self._call(
                    "getTransaction",
                    [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
                )
            except RpcError as exc:
                raise ReconciliationTransientError(f"transaction fetch failed for {signature}: {exc}", cause=exc) from exc
            if tx is None:
                raise ReconciliationTransientError(f"transaction {signature} not yet available")
            entries.append(parse_transaction(signature, tx, address=address, asset=asset, owner=owner, mint=mint))
        return entries

    async def submit(self, signed_transaction: str) -> str:
        try:
            result = await self._call(
                "sendTransaction",
                [signed_transaction, {"encoding": "base64", "skipPreflight": True}],
            )
        except RpcError as exc:
            raise UpstreamBroadcastError(
                f"Send failed: {exc}",
                upstream_status=exc.http_status,
                cause=exc,
            ) from exc
        if not isinstance(result, str) or not result:
            raise UpstreamBroadcastError("Send failed: no signature returned")
        return result


# =============================================================================
# Parsing
# =============================================================================


def _account_keys(tx: dict[str, Any]) -> list[str]:
    keys = tx["transaction"]["message"]["accountKeys"]
    return [k.get("pubkey") if isinstance(k, dict) else str(k) for k in keys]


def extract_memo(tx: dict[str, Any]) -> str | None:
    instructions = tx["transaction"]["message"].get("instructions") or []
    for ix in instructions:
        if not isinstance(ix, dict):
            continue
        if ix.get("program") == "spl-memo" or ix.get("programId") in MEMO_PROGRAM_IDS:
            memo = ix.get("parsed") or ix.get("data")
            return memo if isinstance(memo, str) else None
    return None


def native_delta(tx: dict[str, Any], address: str) -> int:
    meta = tx.get("meta") or {}
    pre = meta.get("preBalances") or []
    post = meta.get("postBalances") or []
    for index, key in enumerate(_account_keys(tx)):
        if key == address and index < len(pre) and index < len(post):
            return int(post[index]) - int(pre[index])
    return 0


def _token_amount(rows: list[dict[str, Any]], keys: list[str], *, address: str, owner: str | None, mint: str | None) -> int:
    total = 0
    for row in rows or []:
        if mint and row.get("mint") != mint:
            continue
        index = row.get("accountIndex")
        at_address = isinstance(index, int) and index < len(keys) and keys[index] == address
        if not at_address and not (owner and row.get("owner") == owner):
            continue
        total += int((row.get("uiTokenAmount") or {}).get("amount") or 0)
    return total


def token_delta(tx: dict[str, Any], address: str, *, owner: str | None = None, mint: str | None = None) -> int:
    meta = tx.get("meta") or {}
    keys = _account_keys(tx)
    post = _token_amount(meta.get("postTokenBalances"), keys, address=address, owner=owner, mint=mint)
    pre = _token_amount(meta.get("preTokenBalances"), keys, address=address, owner=owner, mint=mint)
    return post - pre


def parse_transaction(
    signature: str,
    tx: dict[str, Any],
    *,
    address: str,
    asset: Asset,
    owner: str | None = None,
    mint: str | None = None,
) -> ActivityEntry:
    """Reduce a jsonParsed transaction to an ActivityEntry; malformed payloads yield an entry with no memo."""
    try:
        meta = tx.get("meta") or {}
        ok = meta.get("err") is None
        memo = extract_memo(tx)
        if asset is Asset.STABLE:
            delta = token_delta(tx, address, owner=owner, mint=mint)
        else:
            delta = native_delta(tx, address)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("Malformed transaction payload", signature=signature, error=str(exc))
        return ActivityEntry(signature=signature, ok=True, block_time=None)
    return ActivityEntry(
        signature=signature,
        ok=ok,
        balance_deltas={asset: delta},
        memo=memo,
        block_time=tx.get("blockTime"),
    )


__all__ = [
    "RpcError",
    "SolanaRpcClient",
    "extract_memo",
    "native_delta",
    "token_delta",
    "parse_transaction",
]
