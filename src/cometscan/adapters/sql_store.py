from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar

from sqlalchemy import (
    BigInteger, Boolean, Column, Integer, MetaData, String, Table, Text, UniqueConstraint,
    PrimaryKeyConstraint, case, create_engine, func, inspect, select, update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from ..domain.models import AddressObservation, ContractRef, EventRecord, PersistResult, Projection
from ..domain.value_types import Address, CursorStatus
from ..errors import StorageError, StorageUnavailable
from ..ports.storage import CursorStore, EventStore

log = logging.getLogger(__name__)
T = TypeVar("T")

metadata = MetaData()

_ADDR = String(42)
_HASH = String(66)
_UINT = String(78)   # uint256 as decimal text

contracts = Table(
    "contracts", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("network_id", Integer, nullable=False),
    Column("address", _ADDR, nullable=False),
    Column("name", String(64), nullable=False),
    Column("contract_type", String(16), nullable=False),
    Column("deploy_block", BigInteger, nullable=False, default=0),
    Column("base_token_address", _ADDR),
    Column("base_token_symbol", String(16)),
    Column("base_token_decimals", Integer),
    Column("is_active", Boolean, nullable=False, default=True),
    UniqueConstraint("network_id", "address", name="uq_contracts_network_address"),
)

events = Table(
    "events", metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("network_id", Integer, nullable=False),
    Column("tx_hash", _HASH, nullable=False),
    Column("log_index", Integer, nullable=False),
    Column("block_number", BigInteger, nullable=False, index=True),
    Column("contract_id", Integer, nullable=False),
    Column("contract_address", _ADDR, nullable=False),
    Column("event_name", String(32), nullable=False, index=True),
    Column("event_signature", String(160), nullable=False),
    Column("topic0", _HASH), Column("topic1", _HASH), Column("topic2", _HASH), Column("topic3", _HASH),
    Column("raw_data", Text, nullable=False),
    Column("decoded_data", Text, nullable=False),
    Column("timestamp", BigInteger),
    UniqueConstraint("network_id", "tx_hash", "log_index", name="uq_events_natural_key"),
)

def _typed(name: str, *cols: Column) -> Table:
    return Table(
        name, metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("network_id", Integer, nullable=False),
        Column("tx_hash", _HASH, nullable=False),
        Column("log_index", Integer, nullable=False),
        Column("contract_id", Integer, nullable=False),
        Column("block_number", BigInteger, nullable=False),
        Column("timestamp", BigInteger),
        *cols,
        UniqueConstraint("network_id", "tx_hash", "log_index", name=f"uq_{name}_natural_key"),
    )

supply_events = _typed("supply_events",
    Column("from_address", _ADDR), Column("to_address", _ADDR), Column("amount", _UINT))
withdraw_events = _typed("withdraw_events",
    Column("src_address", _ADDR), Column("to_address", _ADDR), Column("amount", _UINT))
supply_collateral_events = _typed("supply_collateral_events",
    Column("from_address", _ADDR), Column("to_address", _ADDR), Column("asset_address", _ADDR),
    Column("amount", _UINT))
withdraw_collateral_events = _typed("withdraw_collateral_events",
    Column("src_address", _ADDR), Column("to_address", _ADDR), Column("asset_address", _ADDR),
    Column("amount", _UINT))
transfer_events = _typed("transfer_events",
    Column("from_address", _ADDR), Column("to_address", _ADDR), Column("amount", _UINT))
reward_claims = _typed("reward_claims",
    Column("src_address", _ADDR), Column("recipient_address", _ADDR), Column("token_address", _ADDR),
    Column("amount", _UINT))
buy_collateral_events = _typed("buy_collateral_events",
    Column("buyer_address", _ADDR), Column("asset_address", _ADDR),
    Column("base_amount", _UINT), Column("collateral_amount", _UINT))
liquidation_events = _typed("liquidation_events",
    Column("absorber_address", _ADDR), Column("borrower_address", _ADDR, index=True),
    Column("collateral_asset", _ADDR), Column("collateral_absorbed", _UINT),
    Column("collateral_usd_value", _UINT),
    Column("base_paid_out", _UINT), Column("base_usd_value", _UINT))

PROJECTION_TABLES: dict[str, Table] = {t.name: t for t in (
    supply_events, withdraw_events, supply_collateral_events, withdraw_collateral_events,
    transfer_events, reward_claims, buy_collateral_events, liquidation_events,
)}

addresses = Table(
    "addresses", metadata,
    Column("address", _ADDR, primary_key=True),
    Column("first_seen_block", BigInteger, nullable=False),
    Column("last_seen_block", BigInteger, nullable=False),
    Column("first_seen_at", BigInteger),
    Column("last_seen_at", BigInteger),
    Column("interaction_count", Integer, nullable=False, default=0),
)

indexer_state = Table(
    "indexer_state", metadata,
    Column("network_id", Integer, nullable=False),
    Column("contract_id", Integer, nullable=False),
    Column("last_indexed_block", BigInteger, nullable=False),
    Column("last_indexed_at", BigInteger),
    Column("status", String(16), nullable=False, default="running"),
    PrimaryKeyConstraint("network_id", "contract_id"),
)


def make_engine(url: str, **engine_kwargs: Any) -> Engine:
    # in-memory SQLite must share one connection across worker threads
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url):
        engine_kwargs.setdefault("poolclass", StaticPool)
        engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, **engine_kwargs)


def _insert(conn: Connection, table: Table):
    if conn.dialect.name == "postgresql":
        return postgresql.insert(table)
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    raise StorageError(f"unsupported database dialect {conn.dialect.name!r}")


def _least(new, cur):
    return case((cur.is_(None), new), (new < cur, new), else_=cur)

def _greatest(new, cur):
    return case((cur.is_(None), new), (new > cur, new), else_=cur)


class SqlStore(EventStore, CursorStore):
    """Events, typed projections, address rollups and cursors in one SQL database.

    Every write is an insert-or-ignore / upsert keyed by its natural key, so a
    replayed block range leaves the tables exactly as the first pass did.
    """

    def __init__(self, db_url: str | None = None, *, engine: Engine | None = None,
                 clock: Callable[[], float] = time.time) -> None:
        if engine is None:
            if db_url is None:
                raise ValueError("pass db_url or engine")
            engine = make_engine(db_url)
        self.engine = engine
        self._clock = clock

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(fn, *args)

    # ──────────────────────────────
    # Schema / health
    # ──────────────────────────────

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def check_connection(self) -> None:
        try:
            with self.engine.connect() as conn:
                insp = inspect(conn)
                missing = [t for t in metadata.tables if not insp.has_table(t)]
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"database unreachable: {e}") from e
        if missing:
            raise StorageUnavailable(f"schema missing tables: {', '.join(sorted(missing))}; run `cometscan init-db`")

    # ──────────────────────────────
    # Writes
    # ──────────────────────────────

    async def persist(
        self,
        record: EventRecord,
        projection: Optional[Projection] = None,
        observations: Iterable[AddressObservation] = (),
    ) -> PersistResult:
        return await self._run(self.persist_sync, record, projection, tuple(observations))

    def persist_sync(
        self,
        record: EventRecord,
        projection: Optional[Projection] = None,
        observations: Iterable[AddressObservation] = (),
    ) -> PersistResult:
        raw, ev = record.raw, record.event
        topics = list(raw.topics[:4]) + [None] * (4 - min(4, len(raw.topics)))
        row = {
            "network_id": record.network_id,
            "tx_hash": raw.tx_hash,
            "log_index": raw.log_index,
            "block_number": raw.block_number,
            "contract_id": record.contract_id,
            "contract_address": raw.contract_address,
            "event_name": ev.event_name,
            "event_signature": ev.kind.signature if ev.kind else "",
            "topic0": topics[0], "topic1": topics[1], "topic2": topics[2], "topic3": topics[3],
            "raw_data": raw.data_hex,
            "decoded_data": json.dumps(dict(ev.fields), separators=(",", ":")),
            "timestamp": ev.timestamp,
        }
        try:
            with self.engine.begin() as conn:
                stmt = _insert(conn, events).values(**row).on_conflict_do_nothing(
                    index_elements=["network_id", "tx_hash", "log_index"])
                if conn.execute(stmt).rowcount != 1:
                    return PersistResult(created=False)
                if projection is not None:
                    self._apply_projection(conn, record, projection)
                for obs in observations:
                    self._observe(conn, obs)
        except SQLAlchemyError as e:
            raise StorageError(f"persist {record.natural_key} failed: {e}") from e
        return PersistResult(created=True)

    def _apply_projection(self, conn: Connection, record: EventRecord, p: Projection) -> None:
        table = PROJECTION_TABLES[p.table]
        if p.mode == "debt_leg":
            # update-only; no collateral leg yet means nothing to update
            values = {k: v for k, v in p.values.items() if k not in ("borrower_address",)}
            n = conn.execute(
                update(table)
                .where(table.c.network_id == record.network_id)
                .where(table.c.tx_hash == record.raw.tx_hash)
                .where(table.c.borrower_address == p.values["borrower_address"])
                .values(**values)
            ).rowcount
            if n == 0:
                log.debug("debt leg without collateral leg tx=%s borrower=%s",
                          record.raw.tx_hash, p.values["borrower_address"])
            return
        values = {
            "network_id": record.network_id,
            "tx_hash": record.raw.tx_hash,
            "log_index": record.raw.log_index,
            "contract_id": record.contract_id,
            "block_number": record.raw.block_number,
            "timestamp": record.event.timestamp,
            **p.values,
        }
        conn.execute(_insert(conn, table).values(**values).on_conflict_do_nothing(
            index_elements=["network_id", "tx_hash", "log_index"]))

    def _observe(self, conn: Connection, obs: AddressObservation) -> None:
        a = addresses.c
        ins = _insert(conn, addresses).values(
            address=obs.address.lower(),
            first_seen_block=obs.block_number, last_seen_block=obs.block_number,
            first_seen_at=obs.timestamp, last_seen_at=obs.timestamp,
            interaction_count=1,
        )
        ex = ins.excluded
        conn.execute(ins.on_conflict_do_update(index_elements=["address"], set_={
            "first_seen_block": _least(ex.first_seen_block, a.first_seen_block),
            "last_seen_block": _greatest(ex.last_seen_block, a.last_seen_block),
            "first_seen_at": _least(ex.first_seen_at, a.first_seen_at),
            "last_seen_at": _greatest(ex.last_seen_at, a.last_seen_at),
            "interaction_count": a.interaction_count + 1,
        }))

    async def observe(self, obs: AddressObservation) -> None:
        await self._run(self.observe_sync, obs)

    def observe_sync(self, obs: AddressObservation) -> None:
        try:
            with self.engine.begin() as conn:
                self._observe(conn, obs)
        except SQLAlchemyError as e:
            raise StorageError(f"observe {obs.address} failed: {e}") from e

    # ──────────────────────────────
    # Contracts / cursors
    # ──────────────────────────────

    async def register_contract(self, network_id: int, ref: ContractRef) -> int:
        return await self._run(self.register_contract_sync, network_id, ref)

    def register_contract_sync(self, network_id: int, ref: ContractRef) -> int:
        try:
            with self.engine.begin() as conn:
                ins = _insert(conn, contracts).values(
                    network_id=network_id, address=ref.address.lower(), name=ref.name,
                    contract_type=ref.kind, deploy_block=ref.deploy_block,
                    base_token_address=ref.base_token_address, base_token_symbol=ref.base_token_symbol,
                    base_token_decimals=ref.base_token_decimals, is_active=True,
                )
                conn.execute(ins.on_conflict_do_update(
                    index_elements=["network_id", "address"],
                    set_={"name": ins.excluded.name, "is_active": True}))
                return conn.execute(
                    select(contracts.c.id)
                    .where(contracts.c.network_id == network_id)
                    .where(contracts.c.address == ref.address.lower())
                ).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError(f"register contract {ref.name} failed: {e}") from e

    async def get_cursor(self, network_id: int, contract_id: int) -> Optional[int]:
        return await self._run(self.get_cursor_sync, network_id, contract_id)

    def get_cursor_sync(self, network_id: int, contract_id: int) -> Optional[int]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(indexer_state.c.last_indexed_block)
                .where(indexer_state.c.network_id == network_id)
                .where(indexer_state.c.contract_id == contract_id)
            ).scalar_one_or_none()

    async def advance_cursor(self, network_id: int, contract_id: int, block: int,
                             status: CursorStatus = "running") -> int:
        return await self._run(self.advance_cursor_sync, network_id, contract_id, block, status)

    def advance_cursor_sync(self, network_id: int, contract_id: int, block: int,
                            status: CursorStatus = "running") -> int:
        s = indexer_state.c
        try:
            with self.engine.begin() as conn:
                ins = _insert(conn, indexer_state).values(
                    network_id=network_id, contract_id=contract_id, last_indexed_block=block,
                    last_indexed_at=int(self._clock()), status=status)
                ex = ins.excluded
                conn.execute(ins.on_conflict_do_update(
                    index_elements=["network_id", "contract_id"],
                    set_={
                        "last_indexed_block": _greatest(ex.last_indexed_block, s.last_indexed_block),
                        "last_indexed_at": ex.last_indexed_at,
                        "status": ex.status,
                    }))
                return conn.execute(
                    select(s.last_indexed_block)
                    .where(s.network_id == network_id).where(s.contract_id == contract_id)
                ).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError(f"advance cursor {network_id}/{contract_id} failed: {e}") from e

    async def mark_stopped(self, network_id: int) -> None:
        def _do() -> None:
            try:
                with self.engine.begin() as conn:
                    conn.execute(update(indexer_state)
                                 .where(indexer_state.c.network_id == network_id)
                                 .values(status="stopped"))
            except SQLAlchemyError as e:
                raise StorageError(f"mark stopped {network_id} failed: {e}") from e
        await self._run(_do)

    # ──────────────────────────────
    # Reads (indexed data)
    # ──────────────────────────────

    def get_address(self, address: str) -> Optional[dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(addresses).where(addresses.c.address == address.lower())).mappings().first()
            return dict(row) if row else None

    def top_addresses(self, limit: int = 20) -> list[dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(addresses).order_by(addresses.c.interaction_count.desc(), addresses.c.address).limit(limit)
            ).mappings().all()
            return [dict(r) for r in rows]

    def recent_events(self, limit: int = 50, event_name: str | None = None) -> list[dict[str, Any]]:
        q = select(events).order_by(events.c.block_number.desc(), events.c.log_index.desc()).limit(limit)
        if event_name:
            q = q.where(events.c.event_name == event_name)
        with self.engine.connect() as conn:
            return [self._event_row(r) for r in conn.execute(q).mappings().all()]

    @staticmethod
    def _event_row(r: Any) -> dict[str, Any]:
        d = dict(r)
        d["decoded_data"] = json.loads(d["decoded_data"] or "{}")
        return d

    def iter_events(self, network_id: int | None = None, batch: int = 10_000) -> Iterator[list[dict[str, Any]]]:
        last_id = 0
        while True:
            q = select(events).where(events.c.id > last_id).order_by(events.c.id).limit(batch)
            if network_id is not None:
                q = q.where(events.c.network_id == network_id)
            with self.engine.connect() as conn:
                rows = [dict(r) for r in conn.execute(q).mappings().all()]
            if not rows:
                return
            last_id = rows[-1]["id"]
            yield rows

    def count(self, table: str) -> int:
        t = metadata.tables[table]
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(t)).scalar_one()

    def overview(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            def n(t: Table, *where: Any) -> int:
                return conn.execute(select(func.count()).select_from(t).where(*where)).scalar_one()
            latest = conn.execute(select(func.max(indexer_state.c.last_indexed_block))).scalar_one_or_none()
            return {
                "total_events": n(events),
                "total_addresses": n(addresses),
                "total_supply_events": n(supply_events),
                "total_withdraw_events": n(withdraw_events),
                "total_liquidations": n(liquidation_events),
                "total_reward_claims": n(reward_claims),
                "latest_indexed_block": latest or 0,
                "contracts_tracked": n(contracts, contracts.c.is_active.is_(True)),
            }
