from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional, Union
from datetime import datetime, timezone

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection

import config
from schemas import ChangeEvent, FreeTable, OccupiedTable, table_document

SINGLETON_ID = 1

_client: Optional[MongoClient] = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
    return _db


def collection(name: str) -> Collection:
    return get_db()[name]


def list_collections() -> List[str]:
    return get_db().list_collection_names()


def _serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc.setdefault("id", doc.get("_id"))
    doc.pop("_id", None)
    return doc


def upsert_document(collection_name: str, key: Any, data: Dict[str, Any]) -> None:
    """Insert or replace the document whose ``_id`` is ``key``."""
    now = datetime.now(timezone.utc)
    col = collection(collection_name)
    existing = col.find_one({"_id": key}, {"created_at": 1})
    doc = {
        **data,
        "_id": key,
        "created_at": existing.get("created_at", now) if existing else now,
        "updated_at": now,
    }
    col.replace_one({"_id": key}, doc, upsert=True)


def get_document(collection_name: str, key: Any) -> Optional[Dict[str, Any]]:
    doc = collection(collection_name).find_one({"_id": key})
    return _serialize(doc) if doc else None


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: int = 1000, sort: Optional[str] = None) -> List[Dict[str, Any]]:
    cursor = collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort, ASCENDING)
    cursor = cursor.limit(limit)
    return [_serialize(doc) for doc in cursor]


def delete_document(collection_name: str, key: Any) -> bool:
    res = collection(collection_name).delete_one({"_id": key})
    return res.deleted_count > 0


def get_singleton(collection_name: str) -> Optional[Dict[str, Any]]:
    return get_document(collection_name, SINGLETON_ID)


def save_singleton(collection_name: str, data: Dict[str, Any]) -> None:
    upsert_document(collection_name, SINGLETON_ID, data)


# ---------- Slots ----------
TABLES = "table"


def fetch_tables() -> List[Dict[str, Any]]:
    return list(collection(TABLES).find({}).sort("_id", ASCENDING))


def save_table(table: Union[FreeTable, OccupiedTable]) -> Dict[str, Any]:
    """Upsert a slot row keyed by its id; returns the stored row."""
    doc = table_document(table)
    collection(TABLES).replace_one({"_id": table.id}, doc, upsert=True)
    return doc


def delete_table(table_id: int) -> bool:
    """Free a slot. The row disappears; readers fall back to the base set."""
    res = collection(TABLES).delete_one({"_id": table_id})
    return res.deleted_count > 0


def watch_table_changes() -> Iterator[ChangeEvent]:
    """Block on the slot change stream (needs a replica set)."""
    with collection(TABLES).watch(full_document="updateLookup") as stream:
        for change in stream:
            event = ChangeEvent.from_change_stream(change)
            if event is not None:
                yield event
