"""Slot allocation.

Every open order lives in a "slot": a table row addressed by an integer id
whose range encodes the channel. Dine-in tables are picked by number, while
delivery and counter orders get the first free slot of their range.
"""
from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple, Union

from schemas import FreeTable, OccupiedTable

SlotTable = Union[FreeTable, OccupiedTable]

CHANNEL_RANGES: Dict[str, Tuple[int, int]] = {
    "table": (1, 12),
    "delivery": (900, 949),
    "counter": (950, 999),
}

# number of slots pre-materialized per channel
BASE_SLOTS: Dict[str, int] = {"table": 12, "delivery": 10, "counter": 10}


class SlotError(Exception):
    pass


class InvalidTableNumber(SlotError):
    pass


class NoFreeSlotError(SlotError):
    pass


def normalize_channel(order_type: str) -> str:
    if order_type == "takeaway":
        return "counter"
    if order_type not in CHANNEL_RANGES:
        raise SlotError(f"Unknown channel '{order_type}'")
    return order_type


def initial_tables() -> List[SlotTable]:
    tables: List[SlotTable] = []
    for channel, count in BASE_SLOTS.items():
        start = CHANNEL_RANGES[channel][0]
        tables.extend(FreeTable(id=start + i) for i in range(count))
    return tables


def channel_for(table_id: int) -> Optional[str]:
    for channel, (low, high) in CHANNEL_RANGES.items():
        if low <= table_id <= high:
            return channel
    # ids past 999 only come from the max+1 fallback of the counter range
    if table_id > CHANNEL_RANGES["counter"][1]:
        return "counter"
    return None


def in_range(table_id: int, channel: str) -> bool:
    low, high = CHANNEL_RANGES[channel]
    return low <= table_id <= high


def find_free_slot(tables: Iterable[SlotTable], channel: str) -> Optional[int]:
    """First free slot id of the channel, in ascending id order."""
    channel = normalize_channel(channel)
    candidates = sorted(t.id for t in tables if channel_for(t.id) == channel and t.status == "free")
    return candidates[0] if candidates else None


def next_slot_id(tables: Iterable[SlotTable], channel: str) -> int:
    """Slot id used by checkout: first free slot, else max id of the channel + 1.

    The range is a sizing hint, so the fallback can step past its upper
    bound (a full 900-949 yields 950). Occupied ids past the max are skipped.
    """
    channel = normalize_channel(channel)
    tables = list(tables)
    free = find_free_slot(tables, channel)
    if free is not None:
        return free
    ids = [t.id for t in tables if channel_for(t.id) == channel]
    if not ids:
        return CHANNEL_RANGES[channel][0]
    taken = {t.id for t in tables if t.status == "occupied"}
    slot = max(ids) + 1
    while slot in taken:
        slot += 1
    return slot


def reserve_slot(tables: Iterable[SlotTable], channel: str) -> int:
    """Slot id for the admin external-order flow; never grows the range."""
    free = find_free_slot(tables, channel)
    if free is None:
        raise NoFreeSlotError("Sem vagas disponíveis para esta modalidade.")
    return free


def allocate_slot(tables: Iterable[SlotTable], order_type: str, table_number: Optional[int] = None) -> int:
    channel = normalize_channel(order_type)
    if channel == "table":
        if table_number is None:
            raise InvalidTableNumber("Em qual mesa você está?")
        if not in_range(table_number, "table"):
            raise InvalidTableNumber(f"Mesa {table_number} não existe.")
        # picking an occupied table is allowed; its order gets replaced
        return table_number
    return next_slot_id(tables, channel)
