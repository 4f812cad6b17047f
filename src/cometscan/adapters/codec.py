# Shared JSON → domain parsing for RPC and explorer payloads (same log shape).
from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Iterator, Optional
from ..domain.models import BlockHeader, RawLog
from ..domain.value_types import Address, TxHash
from ..errors import ProviderError

_SHAPE_ERRORS = (ValueError, TypeError, KeyError, AttributeError)

def to_int(v: Any, default: int = 0) -> int:
    """Handles 0x..., decimal strings, and native ints; None/'' -> default."""
    if v is None or v == "":
        return default
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    if s == "0x":
        return default
    return int(s, 16) if s.startswith("0x") else int(s)

def opt_int(v: Any) -> Optional[int]:
    return None if v in (None, "", "0x") else to_int(v)

def to_hex_block(n: int) -> str: return hex(int(n))

def raw_log_from_json(rl: dict[str, Any]) -> RawLog:
    topics = tuple((t if isinstance(t, str) else t.decode()).lower() for t in rl.get("topics") or [] if t)
    ts = rl.get("blockTimestamp", rl.get("timeStamp"))
    return RawLog(
        contract_address=Address(str(rl["address"]).lower()),
        topics=topics,
        data_hex=str(rl.get("data") or "0x"),
        block_number=to_int(rl["blockNumber"]),
        tx_hash=TxHash((rl.get("transactionHash") or rl.get("transaction_hash") or "").lower()),
        log_index=to_int(rl.get("logIndex"), 0),
        block_timestamp=opt_int(ts),
    )

def block_header_from_json(b: dict[str, Any]) -> BlockHeader:
    return BlockHeader(number=to_int(b.get("number")), timestamp=to_int(b.get("timestamp")), hash=b.get("hash"))

# ---- reply shape checks: anything malformed is a ProviderError ----------------

@contextmanager
def upstream_reply(what: str) -> Iterator[None]:
    try:
        yield
    except _SHAPE_ERRORS as e:
        raise ProviderError(f"{what}: malformed reply: {type(e).__name__}: {e}") from e

def height_from_result(res: Any, what: str) -> int:
    with upstream_reply(what):
        return to_int(res)

def logs_from_result(res: Any, what: str) -> list[RawLog]:
    if res is None:
        return []
    if not isinstance(res, list):
        raise ProviderError(f"{what}: expected a list of logs, got {str(res)[:120]!r}")
    with upstream_reply(what):
        return [raw_log_from_json(rl) for rl in res]

def block_from_result(res: Any, what: str) -> BlockHeader:
    if not res:
        raise ProviderError(f"{what}: block not available")
    if not isinstance(res, dict):
        raise ProviderError(f"{what}: expected a block object, got {str(res)[:120]!r}")
    with upstream_reply(what):
        return block_header_from_json(res)
