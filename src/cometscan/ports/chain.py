# cometscan/ports/chain.py
from __future__ import annotations

from typing import Any, Optional, Protocol
from ..domain.models import BlockHeader, RawLog
from ..domain.value_types import Address


class ChainDataClient(Protocol):
    """Port over an upstream chain-data source (RPC node or block explorer).

    Every call goes through the process-wide rate limiter the client was built
    with. Transport and envelope failures surface as ``ProviderError``.
    """

    max_span: int

    async def current_height(self) -> int:
        """Return the latest block number."""

    async def logs(self, address: Address, from_block: int, to_block: int) -> list[RawLog]:
        """Return logs emitted by `address` in [from_block, to_block] inclusive.

        Raises ``RangeTooWide`` when ``to_block - from_block`` exceeds ``max_span``.
        """

    async def block(self, number: int) -> BlockHeader:
        """Return the header (number, timestamp) of block `number`."""

    async def transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        """Return the transaction object, or None when unknown."""

    async def receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        """Return the transaction receipt, or None when unknown."""

    async def aclose(self) -> None: ...
