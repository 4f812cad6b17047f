from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from eth_utils import keccak

from .models import DecodedEvent, EventSpec, Param, RawLog, unrecognized
from .value_types import Address, Topic0

# ──────────────────────────────
# Signature table (Comet + CometRewards)
# ──────────────────────────────

def _a(name: str, indexed: bool = True) -> Param: return Param(name, "address", indexed)
def _u(name: str) -> Param: return Param(name, "uint256")

EVENT_SPECS: tuple[EventSpec, ...] = (
    EventSpec("Supply", (_a("from"), _a("dst"), _u("amount")), ("from", "dst")),
    EventSpec("Withdraw", (_a("src"), _a("to"), _u("amount")), ("src", "to")),
    EventSpec("SupplyCollateral", (_a("from"), _a("dst"), _a("asset"), _u("amount")), ("from", "dst")),
    EventSpec("WithdrawCollateral", (_a("src"), _a("to"), _a("asset"), _u("amount")), ("src", "to")),
    EventSpec("TransferCollateral", (_a("from"), _a("to"), _a("asset"), _u("amount")), ("from", "to")),
    EventSpec("AbsorbCollateral",
              (_a("absorber"), _a("borrower"), _a("asset"), _u("collateralAbsorbed"), _u("usdValue")),
              ("absorber", "borrower")),
    EventSpec("AbsorbDebt", (_a("absorber"), _a("borrower"), _u("basePaidOut"), _u("usdValue")),
              ("absorber", "borrower")),
    EventSpec("BuyCollateral", (_a("buyer"), _a("asset"), _u("baseAmount"), _u("collateralAmount")),
              ("buyer",)),
    EventSpec("Transfer", (_a("from"), _a("to"), _u("amount")), ("from", "to")),
    EventSpec("RewardClaimed", (_a("src"), _a("recipient"), _a("token"), _u("amount")),
              ("src", "recipient")),
)

def topic0_of(spec: EventSpec) -> Topic0:
    return Topic0("0x" + keccak(text=spec.signature).hex())

SIGNATURES: Mapping[Topic0, EventSpec] = MappingProxyType({topic0_of(s): s for s in EVENT_SPECS})
TOPICS_BY_NAME: Mapping[str, Topic0] = MappingProxyType({s.name: t for t, s in SIGNATURES.items()})

# --------- 32B word slicing ----------------------------------------------------

def _strip0x(s: str) -> str: return s[2:] if s[:2].lower() == "0x" else s
def _word(b: bytes, i: int) -> bytes: o = i*32; return b[o:o+32]
def _addr_from_word(w: bytes) -> Address: return Address("0x" + w[-20:].hex())

def _addr_from_topic(t: str) -> Address:
    # low 20 bytes of the 32-byte topic
    return Address("0x" + _strip0x(t).lower()[-40:])

def _value(abi_type: str, w: bytes) -> object:
    if abi_type == "address":
        return _addr_from_word(w)
    if abi_type == "bool":
        return any(w)
    return str(int.from_bytes(w, "big"))   # big ints as strings

# ---------------------------- public API --------------------------------------

def decode(log: RawLog, timestamp: Optional[int] = None) -> DecodedEvent:
    """Classify one raw log against the signature table.

    Unknown topic0s, and logs whose topics/data are too short for the declared
    layout, come back as an ``Unrecognized`` event with no fields.
    """
    t0 = log.topic0
    spec = SIGNATURES.get(Topic0(t0.lower())) if t0 else None
    if spec is None:
        return unrecognized(log, timestamp)

    indexed, body = spec.indexed, spec.body
    if len(log.topics) < 1 + len(indexed):
        return unrecognized(log, timestamp)
    h = _strip0x(log.data_hex)
    if len(h) % 2: h = "0" + h
    try:
        data = bytes.fromhex(h)
    except ValueError:
        return unrecognized(log, timestamp)
    if len(data) < 32 * len(body):
        return unrecognized(log, timestamp)

    fields: dict[str, object] = {}
    try:
        for i, p in enumerate(indexed):
            t = log.topics[1 + i]
            fields[p.name] = _addr_from_topic(t) if p.abi_type == "address" else _value(p.abi_type, bytes.fromhex(_strip0x(t)))
    except ValueError:
        return unrecognized(log, timestamp)
    for i, p in enumerate(body):
        fields[p.name] = _value(p.abi_type, _word(data, i))

    # keep the declared field order
    ordered = {p.name: fields[p.name] for p in spec.params}
    return DecodedEvent(
        event_name=spec.name,
        fields=MappingProxyType(ordered),
        block_number=log.block_number,
        tx_hash=log.tx_hash,
        log_index=log.log_index,
        timestamp=timestamp if timestamp is not None else log.block_timestamp,
        contract_address=log.contract_address,
        kind=spec,
    )
