"""JSON snapshot of the back office data."""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from schemas import Category, Coupon, DailySpecial, LoyaltyConfig, Product, StoreConfig
from slots import SlotTable


def backup_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"backup-jg-convenient-{int(now.timestamp() * 1000)}.json"


def build_snapshot(*, tables: List[SlotTable], products: List[Product], categories: List[Category],
                   coupons: List[Coupon], loyalty: LoyaltyConfig, store_config: StoreConfig,
                   daily_specials: List[DailySpecial], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "tables": [t.model_dump(mode="json") for t in tables],
        "menu_items": [p.model_dump(mode="json") for p in products],
        "categories": [c.model_dump(mode="json") for c in categories],
        "coupons": [c.model_dump(mode="json") for c in coupons],
        "loyalty": loyalty.model_dump(mode="json"),
        "store_config": store_config.model_dump(mode="json"),
        "daily_specials": [d.model_dump(mode="json") for d in daily_specials],
        "exported_at": now.isoformat(),
    }
