from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import asyncpg

from ..errors import InsufficientBalanceError, LedgerError, ProjectNotFoundError, ValidationError
from ..models import Asset, CreditResult, Project, Reservation, Tier, empty_balances, generate_project_id
from .base import LedgerStore, reference_key, require_positive


class PostgresLedgerStore(LedgerStore):
    """
    Durable ledger on PostgreSQL.

    Each mutation runs in one transaction that first locks the project row
    (`SELECT ... FOR UPDATE`), so mutations on one project serialize while
    other projects proceed independently. Balances carry a CHECK constraint
    as a last line against going negative.
    """

    def __init__(self, *, pool, reservation_ttl_sec: int = 120) -> None:
        self._pool = pool
        self._reservation_ttl = int(reservation_ttl_sec)

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("CREATE SCHEMA IF NOT EXISTS gas;")
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gas.projects (
                  project_id TEXT PRIMARY KEY,
                  name TEXT NOT NULL,
                  email TEXT,
                  website TEXT,
                  tier TEXT NOT NULL,
                  active BOOLEAN NOT NULL DEFAULT TRUE,
                  total_tx_count BIGINT NOT NULL DEFAULT 0,
                  last_deposit JSONB,
                  last_payment JSONB,
                  last_tx JSONB,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gas.balances (
                  project_id TEXT NOT NULL REFERENCES gas.projects (project_id),
                  asset TEXT NOT NULL,
                  amount BIGINT NOT NULL DEFAULT 0 CHECK (amount >= 0),
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  PRIMARY KEY (project_id, asset)
                );
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gas.applied_references (
                  reference_key BYTEA PRIMARY KEY,
                  reference TEXT NOT NULL,
                  project_id TEXT NOT NULL,
                  asset TEXT NOT NULL,
                  amount BIGINT NOT NULL,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gas.reservations (
                  reservation_id UUID PRIMARY KEY,
                  project_id TEXT NOT NULL,
                  asset TEXT NOT NULL,
                  amount BIGINT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'reserved',
                  expires_at TIMESTAMPTZ NOT NULL,
                  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS reservations_active ON gas.reservations (project_id, asset, status, expires_at);"
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS gas.deposit_cursors (
                  watch_key TEXT PRIMARY KEY,
                  last_seen_reference TEXT NOT NULL,
                  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )

    async def create(
        self,
        *,
        name: str,
        tier: Tier = Tier.SPONSORED,
        email: str | None = None,
        website: str | None = None,
    ) -> Project:
        if not (name or "").strip():
            raise ValidationError("Project name required")
        async with self._pool.acquire() as conn:
            for _ in range(5):
                project_id = generate_project_id(tier)
                try:
                    async with conn.transaction():
                        await conn.execute(
                            """
                            INSERT INTO gas.projects (project_id, name, email, website, tier)
                            VALUES ($1, $2, $3, $4, $5);
                            """,
                            project_id,
                            name.strip(),
                            email,
                            website,
                            tier.value,
                        )
                        for asset in Asset:
                            await conn.execute(
                                "INSERT INTO gas.balances (project_id, asset, amount) VALUES ($1, $2, 0);",
                                project_id,
                                asset.value,
                            )
                except asyncpg.UniqueViolationError:
                    continue
                return await self._load(conn, project_id)
        raise LedgerError("could not allocate a unique project id")

    async def get(self, project_id: str) -> Project:
        async with self._pool.acquire() as conn:
            return await self._load(conn, project_id)

    async def list_projects(self) -> list[Project]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT project_id FROM gas.projects ORDER BY created_at DESC;")
            return [await self._load(conn, str(row["project_id"])) for row in rows]

    async def set_active(self, project_id: str, active: bool) -> Project:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_project(conn, project_id)
                await conn.execute(
                    "UPDATE gas.projects SET active=$2, updated_at=now() WHERE project_id=$1;",
                    project_id,
                    bool(active),
                )
            return await self._load(conn, project_id)

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
        amount = require_positive(amount)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_project(conn, project_id)
                if reference is not None:
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO gas.applied_references (reference_key, reference, project_id, asset, amount)
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT (reference_key) DO NOTHING
                        RETURNING reference_key;
                        """,
                        reference_key(reference),
                        reference,
                        project_id,
                        asset.value,
                        amount,
                    )
                    if inserted is None:
                        current = await conn.fetchval(
                            "SELECT amount FROM gas.balances WHERE project_id=$1 AND asset=$2;",
                            project_id,
                            asset.value,
                        )
                        return CreditResult(applied=False, balance_after=int(current or 0))

                balance_after = await conn.fetchval(
                    """
                    INSERT INTO gas.balances (project_id, asset, amount)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (project_id, asset)
                    DO UPDATE SET amount = gas.balances.amount + EXCLUDED.amount, updated_at=now()
                    RETURNING amount;
                    """,
                    project_id,
                    asset.value,
                    amount,
                )
                if kind in {"deposit", "payment"}:
                    snapshot = {
                        "asset": asset.value,
                        "amount": amount,
                        "reference": reference,
                        "at": datetime.now(timezone.utc).timestamp(),
                        **(detail or {}),
                    }
                    column = "last_deposit" if kind == "deposit" else "last_payment"
                    await conn.execute(
                        f"UPDATE gas.projects SET {column}=$2::jsonb, updated_at=now() WHERE project_id=$1;",
                        project_id,
                        json.dumps(snapshot),
                    )
                return CreditResult(applied=True, balance_after=int(balance_after))

    async def debit(self, project_id: str, asset: Asset, amount: int) -> int:
        amount = require_positive(amount)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_project(conn, project_id)
                return await self._debit_locked(conn, project_id, asset, amount)

    async def reserve(self, project_id: str, asset: Asset, amount: int) -> Reservation:
        amount = require_positive(amount)
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_project(conn, project_id)
                balance = await self._balance(conn, project_id, asset)
                held = await self._held(conn, project_id, asset)
                available = balance - held
                if available < amount:
                    raise InsufficientBalanceError(
                        project_id=project_id,
                        asset=asset.value,
                        required=amount,
                        available=max(0, available),
                    )
                reservation_id = uuid.uuid4()
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=self._reservation_ttl)
                await conn.execute(
                    """
                    INSERT INTO gas.reservations (reservation_id, project_id, asset, amount, status, expires_at)
                    VALUES ($1, $2, $3, $4, 'reserved', $5);
                    """,
                    reservation_id,
                    project_id,
                    asset.value,
                    amount,
                    expires_at,
                )
                return Reservation(
                    reservation_id=reservation_id,
                    project_id=project_id,
                    asset=asset,
                    amount=amount,
                    expires_at=expires_at.timestamp(),
                )

    async def commit(self, reservation: Reservation, *, signature: str) -> Project:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_project(conn, reservation.project_id)
                await conn.execute(
                    """
                    UPDATE gas.reservations
                    SET status='committed', updated_at=now()
                    WHERE reservation_id=$1;
                    """,
                    reservation.reservation_id,
                )
                await self._debit_locked(conn, reservation.project_id, reservation.asset, reservation.amount)
                await conn.execute(
                    """
                    UPDATE gas.projects
                    SET total_tx_count = total_tx_count + 1,
                        last_tx=$2::jsonb,
                        updated_at=now()
                    WHERE project_id=$1;
                    """,
                    reservation.project_id,
                    json.dumps(
                        {
                            "signature": signature,
                            "asset": reservation.asset.value,
                            "amount": reservation.amount,
                            "at": datetime.now(timezone.utc).timestamp(),
                        }
                    ),
                )
            return await self._load(conn, reservation.project_id)

    async def release(self, reservation: Reservation) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE gas.reservations
                SET status='released', updated_at=now()
                WHERE reservation_id=$1 AND status='reserved';
                """,
                reservation.reservation_id,
            )

    async def has_reference(self, reference: str) -> bool:
        async with self._pool.acquire() as conn:
            found = await conn.fetchval(
                "SELECT 1 FROM gas.applied_references WHERE reference_key=$1;",
                reference_key(reference),
            )
            return found is not None

    async def get_cursor(self, watch_key: str) -> str | None:
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT last_seen_reference FROM gas.deposit_cursors WHERE watch_key=$1;",
                watch_key,
            )
            return str(value) if value is not None else None

    async def set_cursor(self, watch_key: str, reference: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO gas.deposit_cursors (watch_key, last_seen_reference)
                VALUES ($1, $2)
                ON CONFLICT (watch_key)
                DO UPDATE SET last_seen_reference=EXCLUDED.last_seen_reference, updated_at=now();
                """,
                watch_key,
                reference,
            )

    async def _lock_project(self, conn, project_id: str) -> None:
        row = await conn.fetchrow(
            "SELECT project_id FROM gas.projects WHERE project_id=$1 FOR UPDATE;",
            project_id,
        )
        if row is None:
            raise ProjectNotFoundError(project_id=project_id)

    async def _balance(self, conn, project_id: str, asset: Asset) -> int:
        value = await conn.fetchval(
            "SELECT amount FROM gas.balances WHERE project_id=$1 AND asset=$2;",
            project_id,
            asset.value,
        )
        return int(value or 0)

    async def _held(self, conn, project_id: str, asset: Asset) -> int:
        value = await conn.fetchval(
            """
            SELECT COALESCE(SUM(amount), 0)
            FROM gas.reservations
            WHERE project_id=$1 AND asset=$2 AND status='reserved' AND expires_at > now();
            """,
            project_id,
            asset.value,
        )
        return int(value or 0)

    async def _debit_locked(self, conn, project_id: str, asset: Asset, amount: int) -> int:
        balance = await self._balance(conn, project_id, asset)
        available = balance - await self._held(conn, project_id, asset)
        if available < amount:
            raise InsufficientBalanceError(
                project_id=project_id,
                asset=asset.value,
                required=amount,
                available=max(0, available),
            )
        new_balance = balance - amount
        await conn.execute(
            """
            UPDATE gas.balances
            SET amount=$3, updated_at=now()
            WHERE project_id=$1 AND asset=$2;
            """,
            project_id,
            asset.value,
            new_balance,
        )
        return new_balance

    async def _load(self, conn, project_id: str) -> Project:
        row = await conn.fetchrow(
            """
            SELECT project_id, name, email, website, tier, active, total_tx_count,
                   last_deposit, last_payment, last_tx, created_at
            FROM gas.projects
            WHERE project_id=$1;
            """,
            project_id,
        )
        if row is None:
            raise ProjectNotFoundError(project_id=project_id)
        balances = empty_balances()
        for balance_row in await conn.fetch(
            "SELECT asset, amount FROM gas.balances WHERE project_id=$1;",
            project_id,
        ):
            balances[Asset.parse(balance_row["asset"])] = int(balance_row["amount"])
        held = empty_balances()
        for held_row in await conn.fetch(
            """
            SELECT asset, COALESCE(SUM(amount), 0) AS held
            FROM gas.reservations
            WHERE project_id=$1 AND status='reserved' AND expires_at > now()
            GROUP BY asset;
            """,
            project_id,
        ):
            held[Asset.parse(held_row["asset"])] = int(held_row["held"])
        created_at = row["created_at"]
        return Project(
            id=str(row["project_id"]),
            name=str(row["name"]),
            tier=Tier.parse(row["tier"]),
            balances=balances,
            held=held,
            total_tx_count=int(row["total_tx_count"] or 0),
            active=bool(row["active"]),
            email=row["email"],
            website=row["website"],
            created_at=created_at.timestamp() if isinstance(created_at, datetime) else float(created_at or 0),
            last_deposit=_json_column(row["last_deposit"]),
            last_payment=_json_column(row["last_payment"]),
            last_tx=_json_column(row["last_tx"]),
        )


def _json_column(raw: Any) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return value if isinstance(value, dict) else None
    return None


_pool_lock = asyncio.Lock()
_pool: asyncpg.Pool | None = None


async def get_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    global _pool
    if _pool is not None:
        return _pool
    async with _pool_lock:
        if _pool is None:
            _pool = await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
        return _pool


__all__ = ["PostgresLedgerStore", "get_pool"]
