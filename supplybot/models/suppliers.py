"""Supplier models — Supplier, SupplierProduct, PriceHistory, ScrapingJob."""

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


class Supplier(Base):
    """A supplier and how its catalog can be reached.

    Catalog access, in order of preference: api_endpoint, portal_url +
    portal_credentials, public website. Suppliers are soft-deactivated
    (is_active=False), never deleted.
    """

    __tablename__ = "suppliers"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    contact_email = Column(String(255))
    category = Column(String(100))

    api_endpoint = Column(String(500))
    portal_url = Column(String(500))
    portal_credentials = Column(JSON)  # {"username": ..., "password": ...}
    website = Column(String(500))

    tier = Column(Integer, default=2)
    reliability = Column(Float, default=0.8)
    avg_lead_time = Column(Integer, default=7)
    payment_terms = Column(String(100))

    is_active = Column(Boolean, default=True, nullable=False)
    last_scraped_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)

    organization = relationship("Organization")
    supplier_products = relationship(
        "SupplierProduct", back_populates="supplier", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_suppliers_org_active", "organization_id", "is_active"),
    )


class SupplierProduct(Base):
    """A supplier's offer for one of the organization's products."""

    __tablename__ = "supplier_products"
    id = Column(Integer, primary_key=True)
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    product_id = Column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    supplier_sku = Column(String(255), nullable=False)
    unit_price = Column(Float, nullable=False, default=0.0)
    currency = Column(String(10), default="USD")
    min_order_qty = Column(Integer, default=1)
    in_stock = Column(Boolean, default=True)
    stock_level = Column(Integer)
    lead_time = Column(Integer)
    scraped_data = Column(JSON)
    last_updated = Column(UTCDateTime, default=utcnow)

    supplier = relationship("Supplier", back_populates="supplier_products")
    product = relationship("Product", back_populates="supplier_products")

    __table_args__ = (
        UniqueConstraint("supplier_id", "product_id", name="uq_supplier_product"),
        Index("ix_sp_supplier_sku", "supplier_id", "supplier_sku"),
        Index("ix_sp_product_price", "product_id", "unit_price"),
    )


class PriceHistory(Base):
    """Append-only record of a detected price transition."""

    __tablename__ = "price_history"
    id = Column(Integer, primary_key=True)
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    product_sku = Column(String(255), nullable=False)
    previous_price = Column(Float)
    price = Column(Float, nullable=False)
    change_pct = Column(Float)
    currency = Column(String(10), default="USD")
    source = Column(String(50), default="scraped")
    recorded_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_ph_supplier_sku", "supplier_id", "product_sku", "recorded_at"),
    )


class ScrapingJob(Base):
    """Audit record of one catalog scan."""

    __tablename__ = "scraping_jobs"
    id = Column(Integer, primary_key=True)
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    job_type = Column(String(50), default="catalog")
    method = Column(String(20))
    status = Column(String(20), default="running")  # running, completed, failed
    config = Column(JSON, default=dict)
    results = Column(JSON)
    error = Column(Text)
    started_at = Column(UTCDateTime, default=utcnow)
    completed_at = Column(UTCDateTime)

    supplier = relationship("Supplier")

    __table_args__ = (
        Index("ix_sj_supplier_status", "supplier_id", "status"),
    )
