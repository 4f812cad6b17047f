import asyncio

import pytest

from cometscan.application.ingest import Indexer, State, StopToken, register_contracts
from cometscan.errors import RangeTooWide

from conftest import ALICE, BOB, CAROL, WETH, FakeChainClient, make_log, market_ref

NET = 11155111


def _indexer(store, client, *, deploy_block=0, genesis=1, retry=0.0, poll=0.0):
    tracked = asyncio.run(register_contracts(store, NET, [market_ref(deploy_block)]))
    return Indexer(client=client, store=store, network_id=NET, contracts=tracked,
                   genesis_block=genesis, poll_interval_s=poll, retry_delay_s=retry), tracked[0]


class StopAfterHeights(FakeChainClient):
    """Flips the stop token on the n-th height query."""

    def __init__(self, *a, stop_on: int, **kw) -> None:
        super().__init__(*a, **kw)
        self.stop_on = stop_on
        self.heights = 0
        self.token = StopToken()

    async def current_height(self) -> int:
        self.heights += 1
        if self.heights >= self.stop_on:
            self.token.stop()
        return self.height


def _logs():
    return [
        make_log("Supply", (ALICE, BOB), (10,), block=5, tx=1, ts=1_000),
        make_log("Withdraw", (BOB, CAROL), (4,), block=12, tx=2, ts=1_100),
        make_log("SupplyCollateral", (CAROL, CAROL, WETH), (7,), block=25, tx=3, ts=1_200),
    ]


def test_sync_walks_cursor_in_max_span_steps(store):
    client = FakeChainClient(_logs(), height=30)
    ix, contract = _indexer(store, client)
    assert asyncio.run(ix.sync_once()) == 4
    assert client.calls == [(1, 9), (10, 18), (19, 27), (28, 30)]
    assert store.get_cursor_sync(NET, contract.id) == 30
    assert store.count("events") == 3
    assert store.count("supply_collateral_events") == 1
    # caught up: nothing left to do
    assert asyncio.run(ix.sync_once()) == 0


def test_empty_ranges_still_advance(store):
    client = FakeChainClient([], height=20)
    ix, contract = _indexer(store, client)
    asyncio.run(ix.sync_once())
    assert store.get_cursor_sync(NET, contract.id) == 20
    assert store.count("events") == 0


def test_starts_at_deploy_block(store):
    client = FakeChainClient(_logs(), height=30)
    ix, contract = _indexer(store, client, deploy_block=20)
    asyncio.run(ix.sync_once())
    assert client.calls[0] == (20, 28)
    assert store.count("events") == 1


def test_provider_error_retries_same_range_without_duplicates(store):
    client = StopAfterHeights(_logs(), height=30, stop_on=3)
    client.fail_logs = 1
    ix, contract = _indexer(store, client)
    asyncio.run(ix.run(client.token))

    assert ix.failures == 1
    assert client.calls[0] == (1, 9)
    assert client.calls[1] == (1, 9)
    assert store.get_cursor_sync(NET, contract.id) == 30
    assert store.count("events") == 3
    assert store.get_address(BOB)["interaction_count"] == 2
    assert ix.state is State.STOPPED


def test_replayed_range_is_absorbed(store):
    client = FakeChainClient(_logs(), height=30)
    ix, contract = _indexer(store, client)
    asyncio.run(ix.sync_once())
    from cometscan.domain.models import BlockRange
    stats = asyncio.run(ix.index_range(contract, BlockRange(1, 9)))
    assert (stats.created, stats.duplicates) == (0, 1)
    assert store.count("events") == 3
    assert store.get_address(ALICE)["interaction_count"] == 1
    assert store.get_cursor_sync(NET, contract.id) == 30


def test_stop_is_checked_between_batches(store):
    client = FakeChainClient(_logs(), height=30)
    ix, contract = _indexer(store, client)
    stop = StopToken()
    real_logs = client.logs

    async def logs_then_stop(*args):
        out = await real_logs(*args)
        stop.stop()
        return out

    client.logs = logs_then_stop
    assert asyncio.run(ix.sync_once(stop)) == 1
    # the in-flight batch finished, nothing after it ran
    assert store.get_cursor_sync(NET, contract.id) == 9
    assert store.count("events") == 1


def test_stop_before_start_exits_immediately(store):
    client = FakeChainClient(_logs(), height=30)
    ix, contract = _indexer(store, client)
    stop = StopToken()
    stop.stop()
    asyncio.run(ix.run(stop))
    assert client.calls == []
    assert ix.state is State.STOPPED


def test_range_too_wide_backs_off(store):
    class Strict(StopAfterHeights):
        async def logs(self, address, from_block, to_block):
            if to_block - from_block > 4:
                raise RangeTooWide(from_block, to_block, 4)
            return await super().logs(address, from_block, to_block)

    client = Strict(_logs(), height=30, stop_on=2)
    ix, contract = _indexer(store, client)
    asyncio.run(ix.run(client.token))
    assert ix.failures >= 1
    assert store.get_cursor_sync(NET, contract.id) is None


def test_missing_timestamps_fetch_each_block_once(store):
    logs = [
        make_log("Supply", (ALICE, BOB), (1,), block=3, tx=1, index=0),
        make_log("Supply", (ALICE, BOB), (2,), block=3, tx=1, index=1),
        make_log("Transfer", (ALICE, BOB), (3,), block=4, tx=2),
    ]
    client = FakeChainClient(logs, height=9)
    ix, _ = _indexer(store, client)
    asyncio.run(ix.sync_once())
    assert client.block_calls == [3, 4]
    assert store.get_address(ALICE)["first_seen_at"] == 1_700_000_000 + 3 * 12


def test_unrecognized_logs_are_dropped(store):
    from cometscan.domain.models import RawLog
    from conftest import MARKET, tx_hash
    junk = RawLog(MARKET, ("0x" + "ab" * 32,), "0x", 2, tx_hash(9), 0, 1)
    client = FakeChainClient([junk], height=9)
    ix, contract = _indexer(store, client)
    asyncio.run(ix.sync_once())
    assert store.count("events") == 0
    assert store.get_cursor_sync(NET, contract.id) == 9


def test_stop_token_wait():
    async def go():
        t = StopToken()
        assert await t.wait(0) is False
        asyncio.get_running_loop().call_later(0.01, t.stop)
        return await t.wait(5)

    assert asyncio.run(go()) is True


def test_explorer_rate_limit_reply_backs_off_and_resumes(store):
    import httpx
    from cometscan.adapters.explorer_httpx import ExplorerClient
    from cometscan.adapters.rate_limiter import RateLimiter

    token = StopToken()
    heights = []

    def handler(request):
        q = dict(request.url.params)
        if q["action"] == "eth_blockNumber":
            heights.append(q)
            if len(heights) == 1:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result":
                                                 "Max rate limit reached, please use API Key for higher rate limit"})
            if len(heights) >= 3:
                token.stop()
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x14"})
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": []})

    client = ExplorerClient(chain_id=NET, limiter=RateLimiter(0.0), transport=httpx.MockTransport(handler))
    ix, contract = _indexer(store, client)
    asyncio.run(ix.run(token))
    assert ix.failures == 1
    assert store.get_cursor_sync(NET, contract.id) == 20
    assert ix.state is State.STOPPED


def test_timestamps_fetched_only_for_recognized_events(store):
    from cometscan.domain.models import RawLog
    from conftest import MARKET, tx_hash
    junk = RawLog(MARKET, ("0x" + "ab" * 32,), "0x", 2, tx_hash(9), 0, None)
    supply = make_log("Supply", (ALICE, BOB), (1,), block=3, tx=1)
    client = FakeChainClient([junk, supply], height=9)
    ix, _ = _indexer(store, client)
    asyncio.run(ix.sync_once())
    assert client.block_calls == [3]
    assert store.count("events") == 1
