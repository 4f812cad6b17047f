from __future__ import annotations
from typing import Callable, Optional
from ..domain.models import AddressObservation, DecodedEvent, Projection

# ──────────────────────────────
# Typed projections, one builder per event kind
# ──────────────────────────────

def _f(ev: DecodedEvent, name: str) -> object:
    return ev.fields.get(name)

def _supply(ev: DecodedEvent) -> Projection:
    return Projection("supply_events", {
        "from_address": _f(ev, "from"), "to_address": _f(ev, "dst"), "amount": _f(ev, "amount")})

def _withdraw(ev: DecodedEvent) -> Projection:
    return Projection("withdraw_events", {
        "src_address": _f(ev, "src"), "to_address": _f(ev, "to"), "amount": _f(ev, "amount")})

def _supply_collateral(ev: DecodedEvent) -> Projection:
    return Projection("supply_collateral_events", {
        "from_address": _f(ev, "from"), "to_address": _f(ev, "dst"),
        "asset_address": _f(ev, "asset"), "amount": _f(ev, "amount")})

def _withdraw_collateral(ev: DecodedEvent) -> Projection:
    return Projection("withdraw_collateral_events", {
        "src_address": _f(ev, "src"), "to_address": _f(ev, "to"),
        "asset_address": _f(ev, "asset"), "amount": _f(ev, "amount")})

def _absorb_collateral(ev: DecodedEvent) -> Projection:
    return Projection("liquidation_events", {
        "absorber_address": _f(ev, "absorber"), "borrower_address": _f(ev, "borrower"),
        "collateral_asset": _f(ev, "asset"), "collateral_absorbed": _f(ev, "collateralAbsorbed"),
        "collateral_usd_value": _f(ev, "usdValue")})

def _absorb_debt(ev: DecodedEvent) -> Projection:
    return Projection("liquidation_events", {
        "borrower_address": _f(ev, "borrower"),
        "base_paid_out": _f(ev, "basePaidOut"), "base_usd_value": _f(ev, "usdValue")},
        mode="debt_leg")

def _buy_collateral(ev: DecodedEvent) -> Projection:
    return Projection("buy_collateral_events", {
        "buyer_address": _f(ev, "buyer"), "asset_address": _f(ev, "asset"),
        "base_amount": _f(ev, "baseAmount"), "collateral_amount": _f(ev, "collateralAmount")})

def _transfer(ev: DecodedEvent) -> Projection:
    return Projection("transfer_events", {
        "from_address": _f(ev, "from"), "to_address": _f(ev, "to"), "amount": _f(ev, "amount")})

def _reward_claimed(ev: DecodedEvent) -> Projection:
    return Projection("reward_claims", {
        "src_address": _f(ev, "src"), "recipient_address": _f(ev, "recipient"),
        "token_address": _f(ev, "token"), "amount": _f(ev, "amount")})

PROJECTORS: dict[str, Callable[[DecodedEvent], Projection]] = {
    "Supply": _supply,
    "Withdraw": _withdraw,
    "SupplyCollateral": _supply_collateral,
    "WithdrawCollateral": _withdraw_collateral,
    "AbsorbCollateral": _absorb_collateral,
    "AbsorbDebt": _absorb_debt,
    "BuyCollateral": _buy_collateral,
    "Transfer": _transfer,
    "RewardClaimed": _reward_claimed,
}

def project(ev: DecodedEvent) -> Optional[Projection]:
    fn = PROJECTORS.get(ev.event_name)
    return fn(ev) if fn and ev.recognized else None

# ──────────────────────────────
# Address activity
# ──────────────────────────────

def observations(ev: DecodedEvent) -> list[AddressObservation]:
    """One observation per participant field; an address named twice counts twice."""
    return [AddressObservation(address=addr, block_number=ev.block_number, timestamp=ev.timestamp)
            for _, addr in ev.participants()]
