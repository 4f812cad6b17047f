from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from enum import Enum
from typing import Iterable, Protocol, Sequence

from ..domain.decoding import decode
from ..domain.models import BatchStats, BlockRange, ContractRef, EventRecord, TrackedContract
from ..errors import ProviderError, RangeTooWide, StorageError
from ..ports.chain import ChainDataClient
from ..ports.storage import CursorStore, EventStore
from .planning import plan_ranges
from .projections import observations, project

log = logging.getLogger(__name__)


class State(str, Enum):
    IDLE = "idle"
    COMPUTE_RANGE = "compute_range"
    FETCH = "fetch"
    DECODE = "decode"
    PERSIST = "persist"
    ADVANCE_CURSOR = "advance_cursor"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class StopToken:
    """Cooperative stop signal. Checked between batches; interrupts idle waits only."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def stop(self) -> None:
        self._event.set()

    @property
    def stopped(self) -> bool:
        return self._event.is_set()

    async def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if the stop arrived meanwhile."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.stopped
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


class Store(EventStore, CursorStore, Protocol):
    """What the control loop needs from persistence."""


async def register_contracts(store: CursorStore, network_id: int,
                             refs: Iterable[ContractRef]) -> list[TrackedContract]:
    out: list[TrackedContract] = []
    for ref in refs:
        cid = await store.register_contract(network_id, ref)
        out.append(TrackedContract(id=cid, ref=ref))
    return out


class Indexer:
    """Per-contract ingestion loop.

    COMPUTE_RANGE → FETCH → DECODE → PERSIST → ADVANCE_CURSOR, one sub-range at a
    time, so the cursor only ever names blocks whose logs are all persisted. Any
    fetch/persist failure backs off and retries from the unchanged cursor.
    """

    def __init__(
        self,
        *,
        client: ChainDataClient,
        store: Store,
        network_id: int,
        contracts: Sequence[TrackedContract],
        genesis_block: int = 0,
        poll_interval_s: float = 12.0,
        retry_delay_s: float = 5.0,
    ) -> None:
        self.client = client
        self.store = store
        self.network_id = network_id
        self.contracts = list(contracts)
        self.genesis_block = genesis_block
        self.poll_interval_s = poll_interval_s
        self.retry_delay_s = retry_delay_s
        self.state = State.IDLE
        self.batches = 0
        self.failures = 0

    def _enter(self, state: State) -> None:
        if state is not self.state:
            log.debug("state %s → %s", self.state.value, state.value)
        self.state = state

    # ──────────────────────────────
    # Control loop
    # ──────────────────────────────

    async def run(self, stop: StopToken) -> None:
        log.info("indexer started network=%s contracts=%s",
                 self.network_id, ", ".join(c.ref.name for c in self.contracts))
        self._enter(State.IDLE)
        while not stop.stopped:
            try:
                done = await self.sync_once(stop)
            except RangeTooWide:
                self.failures += 1
                log.exception("batch aborted: range wider than the provider allows")
                done = None
            except (ProviderError, StorageError) as e:
                self.failures += 1
                log.warning("batch failed, retrying in %.1fs: %s", self.retry_delay_s, e)
                done = None
            if done is None:
                self._enter(State.BACKOFF)
                if await stop.wait(self.retry_delay_s):
                    break
                continue
            self._enter(State.IDLE)
            if done == 0 and await stop.wait(self.poll_interval_s):
                break
        self._enter(State.STOPPED)
        try:
            await self.store.mark_stopped(self.network_id)
        except StorageError as e:
            log.warning("could not flag cursors as stopped: %s", e)
        log.info("indexer stopped after %d batches", self.batches)

    async def sync_once(self, stop: StopToken | None = None) -> int:
        """Bring every contract up to the current height. Returns batches processed."""
        self._enter(State.COMPUTE_RANGE)
        height = await self.client.current_height()
        processed = 0
        for contract in self.contracts:
            if stop is not None and stop.stopped:
                break
            while True:
                if stop is not None and stop.stopped:
                    return processed
                self._enter(State.COMPUTE_RANGE)
                start = await self._start_block(contract)
                if start > height:
                    break
                # one sub-range at a time; the next is computed from the advanced cursor
                rng = next(plan_ranges(start, height, self.client.max_span))
                await self.index_range(contract, rng)
                processed += 1
        return processed

    async def _start_block(self, contract: TrackedContract) -> int:
        cursor = await self.store.get_cursor(self.network_id, contract.id)
        if cursor is None:
            return max(self.genesis_block, contract.ref.deploy_block)
        return max(cursor + 1, contract.ref.deploy_block)

    # ──────────────────────────────
    # One batch
    # ──────────────────────────────

    async def index_range(self, contract: TrackedContract, rng: BlockRange) -> BatchStats:
        stats = BatchStats(range=rng)

        self._enter(State.FETCH)
        logs = await self.client.logs(contract.ref.address, rng.start, rng.end)
        stats.logs = len(logs)

        self._enter(State.DECODE)
        decoded = []
        for raw in sorted(logs, key=lambda l: (l.block_number, l.log_index)):
            ev = decode(raw)
            if not ev.recognized:
                stats.filtered += 1
                log.debug("unrecognized log tx=%s idx=%s topic0=%s", raw.tx_hash, raw.log_index, raw.topic0)
                continue
            decoded.append((raw, ev))
        # header lookups only for kept events the upstream left without a timestamp
        timestamps = await self._timestamps({ev.block_number for _, ev in decoded if ev.timestamp is None})
        decoded = [(raw, ev if ev.timestamp is not None else replace(ev, timestamp=timestamps[ev.block_number]))
                   for raw, ev in decoded]
        stats.decoded = len(decoded)

        self._enter(State.PERSIST)
        for raw, ev in decoded:
            record = EventRecord(network_id=self.network_id, contract_id=contract.id, raw=raw, event=ev)
            res = await self.store.persist(record, project(ev), observations(ev))
            if res.created:
                stats.created += 1
            else:
                stats.duplicates += 1

        self._enter(State.ADVANCE_CURSOR)
        await self.store.advance_cursor(self.network_id, contract.id, rng.end)
        self.batches += 1
        log.info("%s %d-%d logs=%d decoded=%d created=%d dup=%d",
                 contract.ref.name, rng.start, rng.end, stats.logs, stats.decoded,
                 stats.created, stats.duplicates)
        return stats

    async def _timestamps(self, blocks: Iterable[int]) -> dict[int, int]:
        return {n: (await self.client.block(n)).timestamp for n in sorted(blocks)}
