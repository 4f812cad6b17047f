from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, time as dtime, timezone
from typing import Iterable, Optional, Union

from ..domain.models import DecodedEvent, ExplorerTransaction
from ..errors import InvalidDate, InvalidRange

DateLike = Union[str, int, date, datetime]

TX_CAP = 10
EVENT_CAP = 20

# ──────────────────────────────
# Dates → inclusive epoch-second interval
# ──────────────────────────────

def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())

def parse_date(value: DateLike, *, end: bool = False) -> int:
    """Epoch seconds for a date-ish value.

    A bare date means its first second, or with ``end=True`` its last second, so
    an end date of ``2024-01-31`` still covers that whole day. Naive datetimes
    are read as UTC.
    """
    if isinstance(value, bool):
        raise InvalidDate(f"not a date: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        return _epoch(value)
    if isinstance(value, date):
        return _epoch(datetime.combine(value, dtime.max if end else dtime.min))
    if not isinstance(value, str) or not value.strip():
        raise InvalidDate(f"not a date: {value!r}")
    s = value.strip()
    if s.isdigit():
        return int(s)
    try:
        if len(s) == 10:
            return parse_date(date.fromisoformat(s), end=end)
        return _epoch(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except ValueError as e:
        raise InvalidDate(f"not a date: {value!r}") from e

def to_interval(start: DateLike, end: DateLike) -> tuple[int, int]:
    lo, hi = parse_date(start), parse_date(end, end=True)
    if lo > hi:
        raise InvalidRange(f"start {start!r} is after end {end!r}")
    return lo, hi

# ──────────────────────────────
# Per-address accumulator
# ──────────────────────────────

@dataclass(slots=True)
class AddressRangeActivity:
    address: str
    total_transactions: int = 0
    total_events: int = 0
    functions: Counter = field(default_factory=Counter)
    event_types: Counter = field(default_factory=Counter)
    first_activity: Optional[int] = None
    last_activity: Optional[int] = None
    transactions: list[ExplorerTransaction] = field(default_factory=list)
    events: list[DecodedEvent] = field(default_factory=list)

    @property
    def total_activity(self) -> int:
        return self.total_transactions + self.total_events

    def _widen(self, ts: int) -> None:
        self.first_activity = ts if self.first_activity is None else min(self.first_activity, ts)
        self.last_activity = ts if self.last_activity is None else max(self.last_activity, ts)

    def add_transaction(self, tx: ExplorerTransaction, cap: int) -> None:
        self.total_transactions += 1
        self.functions[tx.function_name] += 1
        self._widen(tx.timestamp)
        if len(self.transactions) < cap:
            self.transactions.append(tx)

    def add_event(self, ev: DecodedEvent, cap: int) -> None:
        self.total_events += 1
        self.event_types[ev.event_name] += 1
        if ev.timestamp is not None:
            self._widen(ev.timestamp)
        if len(self.events) < cap:
            self.events.append(ev)

@dataclass(slots=True, frozen=True)
class RangeQueryResult:
    start: int
    end: int
    total_addresses: int
    total_transactions: int
    total_events: int
    addresses: list[AddressRangeActivity]

def aggregate_range(
    start: DateLike,
    end: DateLike,
    transactions: Iterable[ExplorerTransaction],
    events: Iterable[DecodedEvent],
    *,
    tx_cap: int = TX_CAP,
    event_cap: int = EVENT_CAP,
) -> RangeQueryResult:
    """Group the transactions and events falling in [start, end] by address.

    Transactions are attributed to their sender; events to each distinct
    participant address they name (never the zero address). Histogram counts
    cover everything in the window; only the embedded lists are capped.
    """
    lo, hi = to_interval(start, end)
    acc: dict[str, AddressRangeActivity] = {}

    def slot(addr: str) -> AddressRangeActivity:
        key = addr.lower()
        if key not in acc:
            acc[key] = AddressRangeActivity(address=key)
        return acc[key]

    n_tx = n_ev = 0
    for tx in transactions:
        if not (lo <= tx.timestamp <= hi) or not tx.from_address:
            continue
        n_tx += 1
        slot(tx.from_address).add_transaction(tx, tx_cap)

    for ev in events:
        if ev.timestamp is None or not (lo <= ev.timestamp <= hi):
            continue
        n_ev += 1
        for addr in dict.fromkeys(a.lower() for _, a in ev.participants()):
            slot(addr).add_event(ev, event_cap)

    ranked = sorted(acc.values(), key=lambda a: a.total_activity, reverse=True)
    return RangeQueryResult(start=lo, end=hi, total_addresses=len(ranked),
                            total_transactions=n_tx, total_events=n_ev, addresses=ranked)
