"""Pytest configuration and fixtures."""

from typing import Generator

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from reconciler import ConnectionManager, RealtimeReconciler
from schemas import Category, Coupon, Product
from store import TableStateStore


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def coffee() -> Product:
    return Product(id="c1", name="Café Expresso", price=5.50, category="Cafeteria")


@pytest.fixture
def combo() -> Product:
    return Product(id="cb1", name="Combo Café Completo", price=16.90, category="Combos")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def table_store() -> TableStateStore:
    return TableStateStore()


@pytest.fixture
def reconciler(table_store, clock) -> RealtimeReconciler:
    return RealtimeReconciler(table_store, new_order_seconds=10, status_seconds=6, clock=clock)


@pytest.fixture
def db(monkeypatch):
    """In-memory MongoDB standing in for the real server."""
    mock_db = mongomock.MongoClient()["jg_test"]
    monkeypatch.setattr(database, "_db", mock_db)
    return mock_db


@pytest.fixture
def seeded_db(db, coffee, combo):
    for product in (coffee, combo):
        database.upsert_document("product", product.id, product.model_dump())
    database.upsert_document(
        "product", "x1",
        Product(id="x1", name="Sorvete", price=8.0, category="Doces", is_available=False).model_dump(),
    )
    for cat in (Category(id="cat_1", name="Cafeteria"), Category(id="cat_2", name="Combos")):
        database.upsert_document("category", cat.id, cat.model_dump())
    database.upsert_document(
        "coupon", "c_1", Coupon(id="c_1", code="TEST50", percentage=50).model_dump()
    )
    return db


@pytest.fixture
def client(seeded_db, monkeypatch) -> Generator[TestClient, None, None]:
    """Test client with a fresh board and reconciler per test."""
    table_store = TableStateStore()
    monkeypatch.setattr(main, "store", table_store)
    monkeypatch.setattr(main, "reconciler", RealtimeReconciler(table_store))
    monkeypatch.setattr(main, "manager", ConnectionManager())
    with TestClient(main.app) as test_client:
        yield test_client
