from __future__ import annotations
from typing import Any, Optional

import pytest

from cometscan.adapters.sql_store import SqlStore
from cometscan.domain.decoding import TOPICS_BY_NAME
from cometscan.domain.models import BlockHeader, ContractRef, RawLog
from cometscan.domain.value_types import Address, TxHash
from cometscan.errors import ProviderError, RangeTooWide

MARKET = Address("0x2943ac1216979ad8db76d9147f64e61adc126e96")
ALICE = Address("0x" + "a" * 40)
BOB = Address("0x" + "b" * 40)
CAROL = Address("0x" + "c" * 40)
WETH = Address("0x7b79995e5f793a07bc00c21412e50ecae098e7f9")


def pad_topic(addr: str) -> str:
    return "0x" + "0" * 24 + addr[2:].lower()


def u256(*values: int) -> str:
    return "0x" + "".join(f"{v:064x}" for v in values)


def tx_hash(n: int) -> TxHash:
    return TxHash(f"0x{n:064x}")


def make_log(event: str, addrs: tuple[str, ...], values: tuple[int, ...], *, block: int,
             tx: int = 1, index: int = 0, address: str = MARKET, ts: Optional[int] = None) -> RawLog:
    return RawLog(
        contract_address=Address(address),
        topics=(TOPICS_BY_NAME[event], *(pad_topic(a) for a in addrs)),
        data_hex=u256(*values),
        block_number=block,
        tx_hash=tx_hash(tx),
        log_index=index,
        block_timestamp=ts,
    )


def market_ref(deploy_block: int = 0) -> ContractRef:
    return ContractRef(name="cWETHv3", address=MARKET, kind="market", deploy_block=deploy_block)


class FakeChainClient:
    """In-memory ChainDataClient: logs keyed by block, scripted failures."""

    def __init__(self, logs: list[RawLog] = (), *, height: int = 100, max_span: int = 9) -> None:
        self.all_logs = list(logs)
        self.height = height
        self.max_span = max_span
        self.fail_logs = 0          # next N logs() calls raise ProviderError
        self.calls: list[tuple[int, int]] = []
        self.block_calls: list[int] = []

    async def current_height(self) -> int:
        return self.height

    async def logs(self, address: Address, from_block: int, to_block: int) -> list[RawLog]:
        if to_block - from_block > self.max_span:
            raise RangeTooWide(from_block, to_block, self.max_span)
        self.calls.append((from_block, to_block))
        if self.fail_logs:
            self.fail_logs -= 1
            raise ProviderError("upstream timeout")
        return [l for l in self.all_logs
                if l.contract_address == address and from_block <= l.block_number <= to_block]

    async def block(self, number: int) -> BlockHeader:
        self.block_calls.append(number)
        return BlockHeader(number=number, timestamp=1_700_000_000 + number * 12)

    async def transaction(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return None

    async def receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return None

    async def aclose(self) -> None:
        return None


@pytest.fixture
def store(tmp_path) -> SqlStore:
    s = SqlStore(f"sqlite:///{tmp_path / 'cometscan.db'}")
    s.create_schema()
    return s
