# cometscan/ports/storage.py
from __future__ import annotations

from typing import Iterable, Optional, Protocol
from ..domain.models import AddressObservation, ContractRef, EventRecord, PersistResult, Projection
from ..domain.value_types import CursorStatus


class EventStore(Protocol):
    """Port for idempotent event persistence.

    ``persist`` is an insert-or-ignore on (network_id, tx_hash, log_index). The
    projection and address observations are applied in the same unit of work,
    and only when the event row was newly created.
    """

    async def persist(
        self,
        record: EventRecord,
        projection: Optional[Projection] = None,
        observations: Iterable[AddressObservation] = (),
    ) -> PersistResult: ...

    async def observe(self, obs: AddressObservation) -> None: ...


class CursorStore(Protocol):
    """Port for the per (network, contract) last-indexed-block pointer."""

    async def get_cursor(self, network_id: int, contract_id: int) -> Optional[int]: ...

    async def advance_cursor(self, network_id: int, contract_id: int, block: int,
                             status: CursorStatus = "running") -> int:
        """Move the cursor forward to `block`; never moves it back. Returns the stored value."""

    async def register_contract(self, network_id: int, ref: ContractRef) -> int:
        """Upsert a tracked contract and return its id."""

    async def mark_stopped(self, network_id: int) -> None:
        """Flag every cursor of the network as stopped (values untouched)."""
