"""Inventory models — products, stock, movements, predictions, forecasts, POs."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from ..utils import utcnow
from .base import Base


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    sku = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    unit = Column(String(50))
    created_at = Column(UTCDateTime, default=utcnow)

    supplier_products = relationship("SupplierProduct", back_populates="product")
    inventory_item = relationship("InventoryItem", back_populates="product", uselist=False)

    __table_args__ = (
        UniqueConstraint("organization_id", "sku", name="uq_product_org_sku"),
    )


class InventoryItem(Base):
    """Per-organization stock record for a product.

    available = current_stock - reserved_stock. The strategist only writes
    the suggested_* columns; the live policy belongs to the organization.
    """

    __tablename__ = "inventory_items"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    current_stock = Column(Integer, nullable=False, default=0)
    reserved_stock = Column(Integer, nullable=False, default=0)
    reorder_point = Column(Integer, nullable=False, default=0)
    reorder_quantity = Column(Integer, nullable=False, default=0)
    safety_stock = Column(Integer, default=0)
    avg_daily_usage = Column(Float)

    suggested_reorder_point = Column(Integer)
    suggested_reorder_quantity = Column(Integer)
    suggestion_updated_at = Column(UTCDateTime)

    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    product = relationship("Product", back_populates="inventory_item")
    stock_movements = relationship(
        "StockMovement", back_populates="inventory_item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "product_id", name="uq_inventory_org_product"),
    )

    @property
    def available_stock(self) -> int:
        return (self.current_stock or 0) - (self.reserved_stock or 0)


class StockMovement(Base):
    __tablename__ = "stock_movements"
    id = Column(Integer, primary_key=True)
    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False
    )
    movement_type = Column(String(20), nullable=False)  # in, out, adjustment
    quantity = Column(Integer, nullable=False)
    reference = Column(String(255))
    created_at = Column(UTCDateTime, default=utcnow)

    inventory_item = relationship("InventoryItem", back_populates="stock_movements")

    __table_args__ = (
        Index("ix_sm_item_created", "inventory_item_id", "created_at"),
    )


class StockoutPrediction(Base):
    """Derived prediction, replaced on every forecast run until resolved."""

    __tablename__ = "stockout_predictions"
    id = Column(Integer, primary_key=True)
    inventory_item_id = Column(
        Integer, ForeignKey("inventory_items.id", ondelete="CASCADE"), nullable=False
    )
    predicted_date = Column(UTCDateTime)
    days_until = Column(Float)
    confidence = Column(Float)
    suggested_action = Column(String(20))  # expedite, reorder
    suggested_qty = Column(Integer)
    is_resolved = Column(Boolean, default=False)
    created_at = Column(UTCDateTime, default=utcnow)

    inventory_item = relationship("InventoryItem")


class DemandForecast(Base):
    __tablename__ = "demand_forecasts"
    id = Column(Integer, primary_key=True)
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    forecast_date = Column(UTCDateTime, nullable=False)
    predicted_demand = Column(Float, nullable=False)
    confidence = Column(Float)
    method = Column(String(50))
    factors = Column(JSON)
    created_at = Column(UTCDateTime, default=utcnow)


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    order_number = Column(String(100), nullable=False)
    status = Column(String(20), default="draft")  # draft, sent, confirmed, shipped, received, cancelled
    total_amount = Column(Float, default=0.0)
    items = Column(JSON, default=list)  # [{"product_name", "sku", "quantity", "unit_price"}]
    created_at = Column(UTCDateTime, default=utcnow)

    organization = relationship("Organization")
    supplier = relationship("Supplier")

    __table_args__ = (
        Index("ix_po_org_supplier_status", "organization_id", "supplier_id", "status"),
    )
