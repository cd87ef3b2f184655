"""
Units - wei/ether conversion, deadline formatting, wire shapes

The ledger speaks integers in the smallest unit (wei) and Unix seconds.
Clients speak ether decimal strings and readable dates. This module is the
only place the two meet; nothing here does arithmetic on floats.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation, localcontext
from functools import lru_cache
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from web3 import Web3

from .errors import ConfigError, ValidationError
from .ledger import ProjectSnapshot

WEI_PER_ETHER = 10 ** 18


# ============================================================
# AMOUNTS
# ============================================================

def to_wei(amount: Union[str, int, float, Decimal]) -> int:
    """
    Parse an ether display amount into integer wei.

    Floats are routed through str() so 0.1 stays 0.1 and not its binary
    approximation. Sub-wei precision is rejected, not rounded.
    """
    if isinstance(amount, bool):
        raise ValidationError(f"invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"invalid amount: {amount!r}")
    if not value.is_finite() or value < 0:
        raise ValidationError(f"invalid amount: {amount!r}")
    with localcontext() as ctx:
        ctx.prec = 80
        fractional_wei = (value * WEI_PER_ETHER) % 1
    if fractional_wei != 0:
        raise ValidationError(f"amount has more than 18 decimals: {amount!r}")
    try:
        return int(Web3.to_wei(value, "ether"))
    except ValueError:
        raise ValidationError(f"amount out of range: {amount!r}")


def from_wei(wei: int) -> str:
    """Integer wei → ether decimal string without exponent or trailing zeros."""
    ether = Web3.from_wei(int(wei), "ether")
    with localcontext() as ctx:
        ctx.prec = 80
        return format(Decimal(ether).normalize(), "f")


# ============================================================
# TIME
# ============================================================

@lru_cache(maxsize=8)
def resolve_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigError(f"unknown timezone: {name!r}")


def format_timestamp(ts: int, tz_name: str) -> str:
    """
    Unix seconds → 'dd/mm/yyyy, h:mm:ss am' in the given timezone.

    Timestamps outside what datetime can represent come back as the raw
    number, so one odd deadline never breaks a listing.
    """
    zone = resolve_zone(tz_name)
    try:
        dt = datetime.fromtimestamp(int(ts), zone)
    except (ValueError, OverflowError, OSError):
        return str(int(ts))
    hour12 = dt.hour % 12 or 12
    meridiem = "am" if dt.hour < 12 else "pm"
    return (
        f"{dt.day:02d}/{dt.month:02d}/{dt.year}, "
        f"{hour12}:{dt.minute:02d}:{dt.second:02d} {meridiem}"
    )


# ============================================================
# WIRE SHAPES
# ============================================================

def snapshot_to_wire(snapshot: ProjectSnapshot, tz_name: str) -> dict:
    """
    Project snapshot → JSON body.

    Amounts go out as ether strings (never floats, never raw ints that
    overflow JS number precision). The raw deadline is kept next to the
    formatted one so clients can still compute countdowns.
    """
    return {
        "projectAddress": snapshot.address,
        "name": snapshot.name,
        "ipfsHash": snapshot.locator,
        "owner": snapshot.owner,
        "goal": from_wei(snapshot.goal),
        "amountRaised": from_wei(snapshot.amount_raised),
        "deadline": format_timestamp(snapshot.deadline, tz_name),
        "deadlineTimestamp": snapshot.deadline,
        "isOpen": snapshot.is_open,
    }


def user_to_wire(locator: str, address: str, balance_wei: Optional[int] = None) -> dict:
    body = {"ipfsURL": locator, "userAddress": address}
    if balance_wei is not None:
        body["balance"] = from_wei(balance_wei)
    return body
