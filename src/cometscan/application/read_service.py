from __future__ import annotations
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from ..adapters.codec import raw_log_from_json, to_int, upstream_reply
from ..adapters.explorer_httpx import ExplorerClient
from ..domain.decoding import TOPICS_BY_NAME, decode
from ..domain.models import DecodedEvent, ExplorerTransaction, RawLog
from ..domain.value_types import Address, TxHash
from ..errors import UnknownEventType
from .cache import LIST_TTL_S, STATS_TTL_S, QueryCache
from .range_query import DateLike, RangeQueryResult, aggregate_range, to_interval

log = logging.getLogger(__name__)

RECENT_LOOKBACK_BLOCKS = 600_000
RECENT_WINDOW = 1_000
ADDRESS_SAMPLE = 200
RANGE_TX_SAMPLE = 500
RANGE_EVENT_SAMPLE = 500

SUPPLY_KINDS = ("Supply", "SupplyCollateral")
WITHDRAW_KINDS = ("Withdraw", "WithdrawCollateral")
LIQUIDATION_KINDS = ("AbsorbCollateral", "AbsorbDebt", "BuyCollateral")
TRANSFER_KINDS = ("Transfer", "TransferCollateral")


@dataclass(slots=True)
class AddressSummary:
    address: str
    tx_count: int
    first_seen: int
    last_seen: int


@dataclass(slots=True, frozen=True)
class AddressActivity:
    address: str
    events: list[DecodedEvent]
    supplies: list[DecodedEvent] = field(default_factory=list)
    withdraws: list[DecodedEvent] = field(default_factory=list)
    liquidations: list[DecodedEvent] = field(default_factory=list)
    transfers: list[DecodedEvent] = field(default_factory=list)

    @property
    def total_events(self) -> int:
        return len(self.events)


@dataclass(slots=True, frozen=True)
class ContractStats:
    total_transactions: int
    total_events: int
    unique_addresses: int
    event_counts: dict[str, int]
    recent_transactions: list[ExplorerTransaction]
    recent_events: list[DecodedEvent]


@dataclass(slots=True, frozen=True)
class TransactionDetail:
    tx_hash: TxHash
    block_number: int
    timestamp: Optional[int]
    from_address: str
    to_address: Optional[str]
    value: str
    gas_used: int
    gas_price: str
    status: int
    input: str
    events: list[DecodedEvent]


def _newest_first(events: list[DecodedEvent]) -> list[DecodedEvent]:
    return sorted(events, key=lambda e: (e.block_number, e.log_index), reverse=True)

def _decode_all(logs: list[RawLog]) -> list[DecodedEvent]:
    return [ev for ev in (decode(rl) for rl in logs) if ev.recognized]


class ExplorerReadService:
    """Cached read path over the block explorer for one contract.

    Every upstream call goes through the client's shared rate limiter; the cache
    keeps bursts of identical queries from reaching it at all. A cache hit never
    touches upstream. A miss whose upstream call fails raises ``ProviderError``.
    """

    def __init__(self, client: ExplorerClient, cache: QueryCache, contract_address: str) -> None:
        self.client = client
        self.cache = cache
        self.contract = Address(contract_address.lower())

    # ---- lists --------------------------------------------------------------

    async def get_contract_transactions(self, page: int = 1, offset: int = 50,
                                        sort: str = "desc") -> list[ExplorerTransaction]:
        return await self.cache.get_or_compute(
            f"transactions_{page}_{offset}_{sort}", LIST_TTL_S,
            lambda: self.client.txlist(self.contract, page=page, offset=offset, sort=sort))

    async def get_recent_events(self, limit: int = 50) -> list[DecodedEvent]:
        async def compute() -> list[DecodedEvent]:
            height = await self.client.current_height()
            from_block = max(0, height - RECENT_LOOKBACK_BLOCKS)
            log.debug("recent events window %d..latest (height %d)", from_block, height)
            logs = await self.client.log_window(self.contract, from_block, "latest", offset=RECENT_WINDOW)
            return _newest_first(_decode_all(logs))[:limit]
        return await self.cache.get_or_compute(f"recent_events_{limit}", LIST_TTL_S, compute)

    async def get_events_by_type(self, event_type: str, limit: int = 50) -> list[DecodedEvent]:
        topic0 = TOPICS_BY_NAME.get(event_type)
        if topic0 is None:
            raise UnknownEventType(f"unknown event type {event_type!r}; expected one of {sorted(TOPICS_BY_NAME)}")

        async def compute() -> list[DecodedEvent]:
            height = await self.client.current_height()
            from_block = max(0, height - RECENT_LOOKBACK_BLOCKS)
            logs = await self.client.log_window(self.contract, from_block, "latest", topic0=topic0,
                                                offset=RECENT_WINDOW)
            return _newest_first(_decode_all(logs))[:limit]
        return await self.cache.get_or_compute(f"events_{event_type}_{limit}", LIST_TTL_S, compute)

    async def get_unique_addresses(self, limit: int = 100) -> list[AddressSummary]:
        async def compute() -> list[AddressSummary]:
            txs = await self.get_contract_transactions(offset=ADDRESS_SAMPLE)
            seen: dict[str, AddressSummary] = {}
            for tx in txs:
                if not tx.from_address:
                    continue
                key = tx.from_address.lower()
                s = seen.get(key)
                if s is None:
                    seen[key] = AddressSummary(key, 1, tx.timestamp, tx.timestamp)
                    continue
                s.tx_count += 1
                s.first_seen = min(s.first_seen, tx.timestamp)
                s.last_seen = max(s.last_seen, tx.timestamp)
            return sorted(seen.values(), key=lambda s: s.tx_count, reverse=True)[:limit]
        return await self.cache.get_or_compute(f"unique_addresses_{limit}", LIST_TTL_S, compute)

    # ---- single entities ----------------------------------------------------

    async def get_address_activity(self, address: str) -> AddressActivity:
        addr = address.lower()
        events = [ev for ev in await self.get_recent_events(RANGE_EVENT_SAMPLE)
                  if any(a == addr for _, a in ev.participants())]

        def only(kinds: tuple[str, ...]) -> list[DecodedEvent]:
            return [ev for ev in events if ev.event_name in kinds]
        return AddressActivity(
            address=addr, events=events,
            supplies=only(SUPPLY_KINDS), withdraws=only(WITHDRAW_KINDS),
            liquidations=only(LIQUIDATION_KINDS), transfers=only(TRANSFER_KINDS),
        )

    async def get_transaction(self, tx_hash: str) -> Optional[TransactionDetail]:
        receipt = await self.client.receipt(tx_hash)
        if not receipt:
            return None
        tx = await self.client.transaction(tx_hash)
        if not tx:
            return None
        with upstream_reply(f"transaction {tx_hash}"):
            ts = None
            if tx.get("blockNumber") is not None:
                ts = (await self.client.block(to_int(tx["blockNumber"]))).timestamp
            events = []
            for rl in receipt.get("logs") or []:
                if str(rl.get("address", "")).lower() != self.contract:
                    continue
                ev = decode(raw_log_from_json({**rl, "transactionHash": tx_hash}), ts)
                if ev.recognized:
                    events.append(ev)
            return TransactionDetail(
                tx_hash=TxHash(str(tx.get("hash") or tx_hash).lower()),
                block_number=to_int(tx.get("blockNumber")),
                timestamp=ts,
                from_address=str(tx.get("from") or ""),
                to_address=tx.get("to"),
                value=str(to_int(tx.get("value"))),
                gas_used=to_int(receipt.get("gasUsed")),
                gas_price=str(to_int(tx.get("gasPrice"))),
                status=1 if receipt.get("status") == "0x1" else 0,
                input=str(tx.get("input") or "0x"),
                events=events,
            )

    # ---- aggregates ---------------------------------------------------------

    async def get_contract_stats(self) -> ContractStats:
        async def compute() -> ContractStats:
            txs = await self.get_contract_transactions(offset=100)
            events = await self.get_recent_events(100)
            return ContractStats(
                total_transactions=len(txs),
                total_events=len(events),
                unique_addresses=len({tx.from_address.lower() for tx in txs if tx.from_address}),
                event_counts=dict(Counter(ev.event_name for ev in events)),
                recent_transactions=txs[:10],
                recent_events=events[:10],
            )
        return await self.cache.get_or_compute("contract_stats", STATS_TTL_S, compute)

    async def query_by_date_range(self, start: DateLike, end: DateLike) -> RangeQueryResult:
        # reject bad input before spending any upstream calls
        to_interval(start, end)
        txs = await self.get_contract_transactions(offset=RANGE_TX_SAMPLE)
        events = await self.get_recent_events(RANGE_EVENT_SAMPLE)
        return aggregate_range(start, end, txs, events)
