from __future__ import annotations
import logging
from typing import Any, Optional

import httpx

from ..domain.models import BlockHeader, ExplorerTransaction, RawLog
from ..domain.value_types import Address, Topic0, TxHash
from ..errors import ProviderError, RangeTooWide
from ..ports.chain import ChainDataClient
from .codec import (
    block_from_result, height_from_result, logs_from_result, opt_int, to_hex_block, to_int, upstream_reply,
)
from .rate_limiter import RateLimiter

log = logging.getLogger(__name__)

ETHERSCAN_V2_URL = "https://api.etherscan.io/v2/api"
EMPTY_MESSAGES = ("No records found", "No transactions found")
PAGE_SIZE = 1000   # getLogs page cap


def _unwrap(data: dict[str, Any], what: str) -> Any:
    """Explorer envelope → result.

    status "0" with an empty-result message is an empty list; any other
    status "0" is a hard error. Proxy actions answer JSON-RPC style (no status);
    there a non-hex string result is an error message (e.g. a rate limit).
    """
    if not isinstance(data, dict):
        raise ProviderError(f"{what}: reply is not a JSON object")
    if "error" in data:
        err = data["error"]
        msg = err.get("message") if isinstance(err, dict) else str(err)
        raise ProviderError(f"{what}: {msg}")
    if str(data.get("status", "1")) == "0":
        if data.get("message") in EMPTY_MESSAGES or data.get("result") in EMPTY_MESSAGES:
            return []
        raise ProviderError(f"{what}: {data.get('result') or data.get('message') or 'explorer API error'}")
    res = data.get("result")
    if "jsonrpc" in data and isinstance(res, str) and not res.lower().startswith("0x"):
        raise ProviderError(f"{what}: {res}")
    return res


def _tx_from_json(tx: dict[str, Any]) -> ExplorerTransaction:
    fn = (tx.get("functionName") or "").split("(")[0] or tx.get("methodId") or "Unknown"
    return ExplorerTransaction(
        tx_hash=TxHash(str(tx.get("hash", "")).lower()),
        block_number=to_int(tx.get("blockNumber")),
        timestamp=to_int(tx.get("timeStamp")),
        from_address=str(tx.get("from") or ""),
        to_address=tx.get("to") or None,
        value=str(tx.get("value") or "0"),
        gas_used=opt_int(tx.get("gasUsed")),
        gas_price=tx.get("gasPrice"),
        is_error=str(tx.get("isError")) == "1",
        function_name=fn,
        method_id=tx.get("methodId"),
    )


class ExplorerClient(ChainDataClient):
    """Block-explorer HTTP API (Etherscan v2, chain picked by `chainid`)."""

    def __init__(
        self,
        *,
        chain_id: int,
        limiter: RateLimiter,
        api_key: str = "",
        base_url: str = ETHERSCAN_V2_URL,
        max_span: int = 9,
        page_size: int = PAGE_SIZE,
        timeout_s: int = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.chain_id = chain_id
        self.limiter = limiter
        self.api_key = api_key
        self.base_url = base_url
        self.max_span = max_span
        self.page_size = page_size
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport)

    async def request(self, module: str, action: str, **params: Any) -> Any:
        q: dict[str, Any] = {"chainid": self.chain_id, "module": module, "action": action}
        q.update({k: v for k, v in params.items() if v is not None})
        if self.api_key:
            q["apikey"] = self.api_key
        log.debug("explorer request %s/%s %s", module, action,
                  {k: v for k, v in q.items() if k != "apikey"})
        await self.limiter.acquire()
        try:
            r = await self.client.get(self.base_url, params=q)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"{module}/{action} failed: {type(e).__name__}: {e}") from e
        return _unwrap(data, f"{module}/{action}")

    # ---- ChainDataClient ----------------------------------------------------

    async def current_height(self) -> int:
        return height_from_result(await self.request("proxy", "eth_blockNumber"), "proxy/eth_blockNumber")

    async def logs(self, address: Address, from_block: int, to_block: int) -> list[RawLog]:
        """All logs in the range; walks getLogs pages until a short page, so none are cut off."""
        if to_block - from_block > self.max_span:
            raise RangeTooWide(from_block, to_block, self.max_span)
        out: list[RawLog] = []
        page = 1
        while True:
            res = await self.request("logs", "getLogs", address=address, fromBlock=from_block, toBlock=to_block,
                                     page=page, offset=self.page_size)
            batch = logs_from_result(res, f"logs/getLogs {from_block}-{to_block} page {page}")
            out.extend(batch)
            if len(batch) < self.page_size:
                return out
            page += 1

    async def block(self, number: int) -> BlockHeader:
        b = await self.request("proxy", "eth_getBlockByNumber", tag=to_hex_block(number), boolean="false")
        return block_from_result(b, f"proxy/eth_getBlockByNumber {number}")

    async def transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self.request("proxy", "eth_getTransactionByHash", txhash=tx_hash) or None

    async def receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self.request("proxy", "eth_getTransactionReceipt", txhash=tx_hash) or None

    # ---- read-path windows (paged, not span-bound) --------------------------

    async def log_window(
        self,
        address: Address,
        from_block: int,
        to_block: int | str = "latest",
        *,
        topic0: Topic0 | None = None,
        page: int = 1,
        offset: int = 1000,
    ) -> list[RawLog]:
        res = await self.request("logs", "getLogs", address=address, fromBlock=from_block, toBlock=to_block,
                                 topic0=topic0, page=page, offset=offset)
        return logs_from_result(res, "logs/getLogs window")

    async def txlist(self, address: Address, *, page: int = 1, offset: int = 50,
                     sort: str = "desc") -> list[ExplorerTransaction]:
        res = await self.request("account", "txlist", address=address, startblock=0, endblock=99_999_999,
                                 page=page, offset=offset, sort=sort)
        if res is None:
            return []
        if not isinstance(res, list):
            raise ProviderError(f"account/txlist: expected a list, got {str(res)[:120]!r}")
        with upstream_reply("account/txlist"):
            return [_tx_from_json(tx) for tx in res]

    async def aclose(self) -> None:
        await self.client.aclose()
