"""
conftest.py — Shared Test Fixtures for Supply-Bot

Provides an in-memory SQLite database, a session factory the agents can
open their own sessions from, a mocked mail transport, and factory
fixtures for the core models (Organization, Supplier, Product,
InventoryItem, SupplierProduct).

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- No test talks to SMTP, the language model or a real browser
- Each test function gets fresh tables

Called by: all test files via pytest autodiscovery
Depends on: supplybot.models (Base)
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing supplybot modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ANTHROPIC_API_KEY"] = ""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from supplybot.models import (
    Base,
    InventoryItem,
    Organization,
    Product,
    Supplier,
    SupplierProduct,
)

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default — turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    """Hand this to agents/queues so they share the test database."""
    return TestSessionLocal


@pytest.fixture()
def mail():
    """Mail transport double: send() records calls and returns a Message-ID."""
    transport = AsyncMock()
    transport.send = AsyncMock(return_value="<test-message@supplybot.local>")
    return transport


@pytest.fixture()
def test_org(db_session: Session) -> Organization:
    org = Organization(name="Acme Fabrication", industry="Metalwork", size="small")
    db_session.add(org)
    db_session.commit()
    return org


@pytest.fixture()
def test_supplier(db_session: Session, test_org: Organization) -> Supplier:
    """Tier-1 supplier with a contact email and no catalog source."""
    s = Supplier(
        organization_id=test_org.id,
        name="Steel Supply Co",
        contact_email="sales@steelsupply.example",
        tier=1,
        avg_lead_time=5,
        is_active=True,
    )
    db_session.add(s)
    db_session.commit()
    return s


@pytest.fixture()
def test_product(db_session: Session, test_org: Organization) -> Product:
    p = Product(organization_id=test_org.id, sku="BOLT-M8", name="M8 Hex Bolt", unit="box")
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture()
def test_item(db_session: Session, test_org: Organization, test_product: Product) -> InventoryItem:
    """8 on hand, reorder at 8, reorder 15 — sits exactly on the reorder point."""
    item = InventoryItem(
        organization_id=test_org.id,
        product_id=test_product.id,
        current_stock=8,
        reserved_stock=0,
        reorder_point=8,
        reorder_quantity=15,
    )
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture()
def test_offer(db_session: Session, test_supplier: Supplier, test_product: Product) -> SupplierProduct:
    sp = SupplierProduct(
        supplier_id=test_supplier.id,
        product_id=test_product.id,
        supplier_sku="SSC-BOLT-M8",
        unit_price=100.0,
        in_stock=True,
        stock_level=500,
        lead_time=5,
    )
    db_session.add(sp)
    db_session.commit()
    return sp


@pytest.fixture()
def make_supplier(db_session: Session, test_org: Organization):
    """Factory: make_supplier("Name", tier=2, ...) → committed Supplier."""

    def _make(name: str, **kw) -> Supplier:
        s = Supplier(organization_id=test_org.id, name=name, is_active=True, **kw)
        db_session.add(s)
        db_session.commit()
        return s

    return _make


@pytest.fixture()
def make_offer(db_session: Session):
    """Factory: make_offer(supplier, product, price, ...) → committed SupplierProduct."""

    def _make(supplier: Supplier, product: Product, price: float, **kw) -> SupplierProduct:
        kw.setdefault("supplier_sku", f"{supplier.name[:3].upper()}-{product.sku}")
        kw.setdefault("in_stock", True)
        sp = SupplierProduct(supplier_id=supplier.id, product_id=product.id, unit_price=price, **kw)
        db_session.add(sp)
        db_session.commit()
        return sp

    return _make
