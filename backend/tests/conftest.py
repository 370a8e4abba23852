from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from stockledger.db import Base, build_engine, build_session_factory
from stockledger.main import create_app
from stockledger.orchestrator import InventoryOrchestrator
from stockledger.ports import FixedClock, StaticCatalog, StaticLocations


@pytest.fixture()
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test_ledger.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def clock():
    return FixedClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture()
def catalog():
    items = StaticCatalog()
    items.add("ITEM-A", "Hex bolt M8", sku="SKU-A")
    items.add("ITEM-B", "Washer M8", sku="SKU-B")
    return items


@pytest.fixture()
def locations():
    directory = StaticLocations()
    directory.add("WH-1")
    directory.add("WH-2")
    directory.add("NEG", allows_negative_stock=True)
    directory.add("SMALL", max_quantity=50)
    directory.add("NORES", allow_reservations=False)
    directory.add("CAPPED", max_reservation_percentage=50)
    directory.add("BIN-SKU", allow_mixed_skus=False)
    directory.add("BIN-LOT", allow_mixed_lots=False)
    return directory


@pytest.fixture()
def make_orchestrator(session_factory, catalog, locations, clock):
    def factory(**overrides):
        overrides.setdefault("lock_timeout", 5.0)
        return InventoryOrchestrator(session_factory, catalog, locations, clock, **overrides)

    return factory


@pytest.fixture()
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture()
def client(orchestrator):
    app = create_app(orchestrator, start_sweeper=False)
    with TestClient(app) as test_client:
        yield test_client
