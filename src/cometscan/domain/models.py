from __future__ import annotations
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal, Mapping, Optional
from .value_types import Address, Topic0, TxHash, ZERO_ADDRESS, UNRECOGNIZED

@dataclass(slots=True, frozen=True)
class BlockRange:
    start: int
    end: int
    def span(self) -> int: return self.end - self.start + 1

@dataclass(slots=True, frozen=True)
class RawLog:
    contract_address: Address
    topics: tuple[str, ...]            # lowercased with 0x, topics[0] is the signature
    data_hex: str                      # hex with 0x (or "0x")
    block_number: int
    tx_hash: TxHash
    log_index: int
    block_timestamp: Optional[int] = None

    @property
    def topic0(self) -> Optional[Topic0]:
        return Topic0(self.topics[0]) if self.topics else None

@dataclass(slots=True, frozen=True)
class Param:
    name: str
    abi_type: Literal["address", "uint256", "bool"]
    indexed: bool = False

@dataclass(slots=True, frozen=True)
class EventSpec:
    """One event kind: its ABI layout and which address fields name a participant."""
    name: str
    params: tuple[Param, ...]
    participants: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.abi_type for p in self.params)})"

    @property
    def indexed(self) -> tuple[Param, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def body(self) -> tuple[Param, ...]:
        return tuple(p for p in self.params if not p.indexed)

@dataclass(slots=True, frozen=True)
class DecodedEvent:
    event_name: str
    fields: Mapping[str, object]
    block_number: int
    tx_hash: TxHash
    log_index: int
    timestamp: Optional[int]
    contract_address: Address
    kind: Optional[EventSpec] = None

    @property
    def recognized(self) -> bool:
        return self.kind is not None

    def participants(self) -> list[tuple[str, Address]]:
        """(field, address) for every participant field carrying a real address."""
        if self.kind is None:
            return []
        out: list[tuple[str, Address]] = []
        for name in self.kind.participants:
            v = self.fields.get(name)
            if isinstance(v, str) and v != ZERO_ADDRESS:
                out.append((name, Address(v)))
        return out

def unrecognized(log: RawLog, timestamp: Optional[int] = None) -> DecodedEvent:
    return DecodedEvent(
        event_name=UNRECOGNIZED, fields=MappingProxyType({}),
        block_number=log.block_number, tx_hash=log.tx_hash, log_index=log.log_index,
        timestamp=timestamp if timestamp is not None else log.block_timestamp,
        contract_address=log.contract_address,
    )

@dataclass(slots=True, frozen=True)
class EventRecord:
    network_id: int
    contract_id: int
    raw: RawLog
    event: DecodedEvent

    @property
    def natural_key(self) -> tuple[int, str, int]:
        return (self.network_id, self.raw.tx_hash, self.raw.log_index)

@dataclass(slots=True, frozen=True)
class Projection:
    """A typed-row write derived from one EventRecord.

    `insert` rows are insert-or-ignore on the record's natural key; `debt_leg`
    rows update an existing liquidation row matched by (tx_hash, borrower).
    """
    table: str
    values: Mapping[str, object]
    mode: Literal["insert", "debt_leg"] = "insert"

@dataclass(slots=True, frozen=True)
class AddressObservation:
    address: Address
    block_number: int
    timestamp: Optional[int]

@dataclass(slots=True, frozen=True)
class PersistResult:
    created: bool

@dataclass(slots=True, frozen=True)
class BlockHeader:
    number: int
    timestamp: int
    hash: Optional[str] = None

@dataclass(slots=True, frozen=True)
class ContractRef:
    name: str
    address: Address
    kind: Literal["market", "rewards"]
    deploy_block: int = 0
    base_token_symbol: Optional[str] = None
    base_token_address: Optional[Address] = None
    base_token_decimals: Optional[int] = None

@dataclass(slots=True, frozen=True)
class TrackedContract:
    id: int
    ref: ContractRef

@dataclass(slots=True, frozen=True)
class ExplorerTransaction:
    tx_hash: TxHash
    block_number: int
    timestamp: int
    from_address: str                  # as returned by the explorer
    to_address: Optional[str]
    value: str
    gas_used: Optional[int]
    gas_price: Optional[str]
    is_error: bool
    function_name: str
    method_id: Optional[str] = None

@dataclass(slots=True)
class BatchStats:
    range: BlockRange
    logs: int = 0
    decoded: int = 0
    filtered: int = 0
    created: int = 0
    duplicates: int = 0
