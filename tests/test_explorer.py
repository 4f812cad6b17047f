import asyncio

import httpx
import pytest

from cometscan.adapters.explorer_httpx import ExplorerClient
from cometscan.adapters.rate_limiter import RateLimiter
from cometscan.domain.decoding import TOPICS_BY_NAME
from cometscan.errors import ProviderError, RangeTooWide

from conftest import ALICE, BOB, MARKET, pad_topic, u256


def _client(handler, **kw) -> ExplorerClient:
    return ExplorerClient(chain_id=11155111, limiter=RateLimiter(0.0), api_key="KEY",
                          transport=httpx.MockTransport(handler), **kw)


def _json(payload):
    return lambda request: httpx.Response(200, json=payload)


def test_no_records_is_empty_not_error():
    c = _client(_json({"status": "0", "message": "No records found", "result": []}))
    assert asyncio.run(c.logs(MARKET, 1, 9)) == []
    c = _client(_json({"status": "0", "message": "NOTOK", "result": "No transactions found"}))
    assert asyncio.run(c.txlist(MARKET)) == []


def test_hard_status_zero_is_provider_error():
    c = _client(_json({"status": "0", "message": "NOTOK", "result": "Max rate limit reached"}))
    with pytest.raises(ProviderError, match="Max rate limit reached"):
        asyncio.run(c.txlist(MARKET))


def test_proxy_error_envelope():
    c = _client(_json({"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "invalid block"}}))
    with pytest.raises(ProviderError, match="invalid block"):
        asyncio.run(c.current_height())


def test_request_params_and_log_parsing():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": [{
            "address": MARKET,
            "topics": [TOPICS_BY_NAME["Supply"], pad_topic(ALICE), pad_topic(BOB)],
            "data": u256(7),
            "blockNumber": "0x2a",
            "timeStamp": "0x65a0b000",
            "transactionHash": "0x" + "01" * 32,
            "logIndex": "0x",
        }]})

    (log,) = asyncio.run(_client(handler).logs(MARKET, 40, 45))
    q = seen[0]
    assert (q["module"], q["action"], q["chainid"], q["apikey"]) == ("logs", "getLogs", "11155111", "KEY")
    assert (q["fromBlock"], q["toBlock"]) == ("40", "45")
    assert log.block_number == 42
    assert log.block_timestamp == 0x65A0B000
    assert log.log_index == 0


def test_logs_respect_max_span():
    c = _client(_json({"status": "1", "result": []}), max_span=9)
    with pytest.raises(RangeTooWide):
        asyncio.run(c.logs(MARKET, 0, 10))


def test_log_window_is_paged_not_span_bound():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"status": "1", "result": []})

    asyncio.run(_client(handler).log_window(MARKET, 0, "latest", topic0=TOPICS_BY_NAME["Withdraw"], offset=1000))
    assert seen[0]["toBlock"] == "latest"
    assert seen[0]["offset"] == "1000"
    assert seen[0]["topic0"] == TOPICS_BY_NAME["Withdraw"]


def test_txlist_function_names():
    rows = [
        {"hash": "0xA1", "blockNumber": "10", "timeStamp": "1704412800", "from": ALICE, "to": MARKET,
         "value": "0", "gasUsed": "21000", "gasPrice": "1", "isError": "0",
         "functionName": "supply(address asset, uint256 amount)", "methodId": "0xf2b9fdb8"},
        {"hash": "0xA2", "blockNumber": "11", "timeStamp": "1704412900", "from": BOB, "to": MARKET,
         "value": "0", "gasUsed": "", "gasPrice": "1", "isError": "1", "functionName": "", "methodId": "0xdeadbeef"},
    ]
    txs = asyncio.run(_client(_json({"status": "1", "message": "OK", "result": rows})).txlist(MARKET))
    assert [t.function_name for t in txs] == ["supply", "0xdeadbeef"]
    assert txs[0].timestamp == 1704412800
    assert txs[1].is_error is True
    assert txs[1].gas_used is None
    assert txs[0].tx_hash == "0xa1"


def test_http_failure_is_provider_error():
    c = _client(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(ProviderError):
        asyncio.run(c.current_height())


def _raw(block, index):
    return {"address": MARKET, "topics": [TOPICS_BY_NAME["Supply"], pad_topic(ALICE), pad_topic(BOB)],
            "data": u256(1), "blockNumber": hex(block), "timeStamp": "0x65a0b000",
            "transactionHash": "0x" + f"{block:064x}", "logIndex": hex(index)}


def test_logs_walk_pages_until_a_short_one():
    seen = []
    pages = {"1": [_raw(40, 0), _raw(40, 1)], "2": [_raw(41, 0)]}

    def handler(request):
        q = dict(request.url.params)
        seen.append(q)
        return httpx.Response(200, json={"status": "1", "message": "OK", "result": pages[q["page"]]})

    logs = asyncio.run(_client(handler, page_size=2).logs(MARKET, 40, 45))
    assert [(l.block_number, l.log_index) for l in logs] == [(40, 0), (40, 1), (41, 0)]
    assert [(q["page"], q["offset"]) for q in seen] == [("1", "2"), ("2", "2")]


def test_full_last_page_ends_on_no_records():
    def handler(request):
        if request.url.params["page"] == "1":
            return httpx.Response(200, json={"status": "1", "result": [_raw(40, 0), _raw(40, 1)]})
        return httpx.Response(200, json={"status": "0", "message": "No records found", "result": []})

    assert len(asyncio.run(_client(handler, page_size=2).logs(MARKET, 40, 45))) == 2


def test_proxy_text_result_is_provider_error():
    c = _client(_json({"jsonrpc": "2.0", "id": 1,
                       "result": "Max rate limit reached, please use API Key for higher rate limit"}))
    with pytest.raises(ProviderError, match="Max rate limit reached"):
        asyncio.run(c.current_height())


def test_malformed_results_are_provider_errors():
    c = _client(_json({"status": "1", "message": "OK", "result": "unexpected"}))
    with pytest.raises(ProviderError):
        asyncio.run(c.logs(MARKET, 1, 9))
    with pytest.raises(ProviderError):
        asyncio.run(c.txlist(MARKET))
    c = _client(_json({"status": "1", "message": "OK", "result": [{"topics": [], "blockNumber": "zz"}]}))
    with pytest.raises(ProviderError, match="malformed reply"):
        asyncio.run(c.log_window(MARKET, 0))
    c = _client(_json(["not", "an", "envelope"]))
    with pytest.raises(ProviderError):
        asyncio.run(c.current_height())
