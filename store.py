"""In-memory mirror of every slot row."""
from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from schemas import FreeTable, Order, parse_table
from slots import SlotTable, channel_for, in_range, initial_tables

logger = logging.getLogger(__name__)


class TableStateStore:
    """Slots keyed by id, seeded with the fixed base set.

    Rows coming from the database override the base slots; a deleted row
    reverts the slot to free instead of dropping it.
    """

    def __init__(self) -> None:
        self._tables: Dict[int, SlotTable] = {t.id: t for t in initial_tables()}

    def load(self, rows: Iterable[dict]) -> None:
        merged: Dict[int, SlotTable] = {t.id: t for t in initial_tables()}
        for row in rows:
            try:
                table = parse_table(row)
            except ValidationError:
                logger.warning("Skipping malformed table row %s", row.get("_id", row.get("id")))
                continue
            merged[table.id] = table
        self._tables = merged
        logger.info("Loaded %d slots (%d occupied)", len(merged), len(self.occupied()))

    def upsert(self, table: SlotTable) -> None:
        self._tables[table.id] = table

    def free(self, table_id: int) -> bool:
        """Reset a known slot to free. Unknown ids are ignored."""
        if table_id not in self._tables:
            return False
        self._tables[table_id] = FreeTable(id=table_id)
        return True

    def apply_change(self, event_type: str, table_id: int, table: Optional[SlotTable] = None) -> None:
        if event_type == "delete":
            self.free(table_id)
        elif table is not None:
            self.upsert(table)

    def get(self, table_id: int) -> Optional[SlotTable]:
        return self._tables.get(table_id)

    def order_for(self, table_id: int) -> Optional[Order]:
        table = self._tables.get(table_id)
        return table.current_order if table else None

    def tables(self) -> List[SlotTable]:
        return [self._tables[k] for k in sorted(self._tables)]

    def occupied(self) -> List[SlotTable]:
        return [t for t in self.tables() if t.status == "occupied"]

    def physical_tables(self) -> List[SlotTable]:
        return [t for t in self.tables() if in_range(t.id, "table")]

    def active_deliveries(self) -> List[SlotTable]:
        return [t for t in self.occupied() if channel_for(t.id) == "delivery"]

    def active_counter(self) -> List[SlotTable]:
        return [t for t in self.occupied() if channel_for(t.id) == "counter"]

    def board(self) -> dict:
        return {
            "tables": [t.model_dump(mode="json") for t in self.physical_tables()],
            "deliveries": [t.model_dump(mode="json") for t in self.active_deliveries()],
            "counter": [t.model_dump(mode="json") for t in self.active_counter()],
        }

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, table_id: int) -> bool:
        return table_id in self._tables
