import asyncio
import json

import httpx
import pytest

from cometscan.adapters.rate_limiter import RateLimiter
from cometscan.adapters.rpc_httpx import HttpxRPC
from cometscan.domain.decoding import TOPICS_BY_NAME
from cometscan.errors import ProviderError, RangeTooWide

from conftest import ALICE, BOB, MARKET, pad_topic, u256


def _rpc(handler) -> HttpxRPC:
    return HttpxRPC("https://rpc.test", limiter=RateLimiter(0.0), transport=httpx.MockTransport(handler))


def _reply(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def test_get_logs_request_and_parsing():
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        return _reply(request, [{
            "address": MARKET.upper().replace("0X", "0x"),
            "topics": [TOPICS_BY_NAME["Supply"], pad_topic(ALICE), pad_topic(BOB)],
            "data": u256(5),
            "blockNumber": "0x64",
            "transactionHash": "0x" + "AB" * 32,
            "logIndex": "0x2",
        }])

    async def go():
        rpc = _rpc(handler)
        try:
            return await rpc.logs(MARKET, 100, 109)
        finally:
            await rpc.aclose()

    (log,) = asyncio.run(go())
    assert seen[0]["method"] == "eth_getLogs"
    assert seen[0]["params"][0] == {"address": MARKET, "fromBlock": "0x64", "toBlock": "0x6d"}
    assert log.block_number == 100
    assert log.log_index == 2
    assert log.contract_address == MARKET
    assert log.tx_hash == "0x" + "ab" * 32
    assert log.topic0 == TOPICS_BY_NAME["Supply"]


def test_range_wider_than_span_is_rejected_before_any_call():
    calls = []

    def handler(request):
        calls.append(request)
        return _reply(request, [])

    rpc = _rpc(handler)
    with pytest.raises(RangeTooWide):
        asyncio.run(rpc.logs(MARKET, 100, 110))
    assert calls == []


def test_height_and_block():
    def handler(request):
        method = json.loads(request.content)["method"]
        if method == "eth_blockNumber":
            return _reply(request, "0x10")
        return _reply(request, {"number": "0x5", "timestamp": "0x65a0b000", "hash": "0xbeef"})

    async def go():
        rpc = _rpc(handler)
        return await rpc.current_height(), await rpc.block(5)

    height, header = asyncio.run(go())
    assert height == 16
    assert header.timestamp == 0x65A0B000


def test_rpc_error_and_transport_failures_are_provider_errors():
    def rpc_error(request):
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                         "error": {"code": -32005, "message": "limit exceeded"}})

    def server_error(request):
        return httpx.Response(503, text="unavailable")

    def broken(request):
        raise httpx.ConnectError("refused", request=request)

    for handler in (rpc_error, server_error, broken):
        with pytest.raises(ProviderError):
            asyncio.run(_rpc(handler).current_height())


def test_missing_block_is_provider_error():
    rpc = _rpc(lambda request: _reply(request, None))
    with pytest.raises(ProviderError):
        asyncio.run(rpc.block(1))


def test_malformed_results_are_provider_errors():
    with pytest.raises(ProviderError, match="malformed reply"):
        asyncio.run(_rpc(lambda request: _reply(request, "0xnothex")).current_height())
    with pytest.raises(ProviderError):
        asyncio.run(_rpc(lambda request: _reply(request, "rate limited")).logs(MARKET, 1, 5))
    with pytest.raises(ProviderError):
        asyncio.run(_rpc(lambda request: httpx.Response(200, json=[1, 2])).current_height())
