from __future__ import annotations
import logging
from typing import Any, Optional

import httpx

from ..domain.models import BlockHeader, RawLog
from ..domain.value_types import Address
from ..errors import ProviderError, RangeTooWide
from ..ports.chain import ChainDataClient
from .codec import block_from_result, height_from_result, logs_from_result, to_hex_block
from .rate_limiter import RateLimiter

log = logging.getLogger(__name__)


class HttpxRPC(ChainDataClient):
    """JSON-RPC node client. One request per call, each gated by the shared limiter."""

    def __init__(
        self,
        rpc_url: str,
        *,
        limiter: RateLimiter,
        max_span: int = 9,
        timeout_s: int = 20,
        max_conn: int = 16,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.limiter = limiter
        self.max_span = max_span
        self._id = 0
        if transport is not None:
            self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport)
        else:
            self.client = httpx.AsyncClient(
                http2=True,
                timeout=httpx.Timeout(timeout_s),
                limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn//2)),
            )

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        await self.limiter.acquire()
        try:
            r = await self.client.post(self.rpc_url, json=payload)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"{method} failed: {type(e).__name__}: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{method}: reply is not a JSON-RPC object")
        if "error" in data:
            err = data["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise ProviderError(f"{method} RPC error code={code} message={msg}")
        return data.get("result")

    async def current_height(self) -> int:
        return height_from_result(await self._call("eth_blockNumber", []), "eth_blockNumber")

    async def logs(self, address: Address, from_block: int, to_block: int) -> list[RawLog]:
        if to_block - from_block > self.max_span:
            raise RangeTooWide(from_block, to_block, self.max_span)
        res = await self._call("eth_getLogs", [{
            "address": str(address).lower(),
            "fromBlock": to_hex_block(from_block),
            "toBlock": to_hex_block(to_block),
        }])
        return logs_from_result(res, "eth_getLogs")

    async def block(self, number: int) -> BlockHeader:
        b = await self._call("eth_getBlockByNumber", [to_hex_block(number), False])
        return block_from_result(b, f"eth_getBlockByNumber {number}")

    async def transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self._call("eth_getTransactionByHash", [tx_hash])

    async def receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def aclose(self) -> None:
        await self.client.aclose()
