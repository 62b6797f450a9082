import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import main
from repo import Base, InventoryRepo, Product, ProductVariant, make_engine

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'stock.db'}")
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def inventory(engine):
    return InventoryRepo(bind=engine)


@pytest.fixture
def seeded(inventory):
    """Two products: a tee with three variants (ok, low, out) and a mug with one."""
    tee = Product(id=uuid.uuid4(), name="Tee", price=Decimal("1000.00"))
    mug = Product(id=uuid.uuid4(), name="Mug", price=Decimal("450.00"))
    variants = {
        "tee_m": ProductVariant(id=uuid.uuid4(), product=tee, size="M", color="Black", stock=20, min_stock=5),
        "tee_l": ProductVariant(id=uuid.uuid4(), product=tee, size="L", stock=3, min_stock=5),
        "tee_xl": ProductVariant(id=uuid.uuid4(), product=tee, size="XL", stock=0, min_stock=5),
        "mug": ProductVariant(id=uuid.uuid4(), product=mug, stock=7, min_stock=2),
    }
    with inventory.session() as s:
        s.add_all([tee, mug, *variants.values()])
        s.commit()
        return {name: v.id for name, v in variants.items()}


@pytest.fixture
def client(inventory, monkeypatch):
    monkeypatch.setenv("INVENTORY_ADMIN_TOKEN", ADMIN_TOKEN)
    main.app.dependency_overrides[main.get_repo] = lambda: inventory
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Token": ADMIN_TOKEN}
