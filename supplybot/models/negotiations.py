"""Negotiation state machine records — Negotiation, NegotiationMessage."""

from sqlalchemy import JSON, Column, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from ..database import UTCDateTime
from ..utils import utcnow
from .base import Base

NEGOTIATION_STATUSES = ("initiated", "in_progress", "accepted", "rejected", "expired")
TERMINAL_STATUSES = frozenset({"accepted", "rejected", "expired"})


class Negotiation(Base):
    """One negotiation with a supplier.

    Several negotiations with the same supplier may be open at once.
    The current round is derived from the outbound message count.
    """

    __tablename__ = "negotiations"
    id = Column(Integer, primary_key=True)
    organization_id = Column(
        Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    supplier_id = Column(
        Integer, ForeignKey("suppliers.id", ondelete="CASCADE"), nullable=False
    )
    negotiation_type = Column(String(20), default="price")
    status = Column(String(20), nullable=False, default="initiated")
    initial_offer = Column(JSON, nullable=False)  # {"products": [...], "target_savings", "strategy"}
    counter_offers = Column(JSON, default=list)
    final_terms = Column(JSON)
    savings = Column(Float)
    expires_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    meta = Column("metadata", JSON, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    organization = relationship("Organization")
    supplier = relationship("Supplier")
    messages = relationship(
        "NegotiationMessage",
        back_populates="negotiation",
        cascade="all, delete-orphan",
        order_by="NegotiationMessage.id",
    )

    __table_args__ = (
        Index("ix_neg_org_supplier", "organization_id", "supplier_id"),
        Index("ix_neg_status_expires", "status", "expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class NegotiationMessage(Base):
    """Immutable, direction-tagged entry in a negotiation's email log."""

    __tablename__ = "negotiation_messages"
    id = Column(Integer, primary_key=True)
    negotiation_id = Column(
        Integer, ForeignKey("negotiations.id", ondelete="CASCADE"), nullable=False
    )
    direction = Column(String(10), nullable=False)  # outbound, inbound
    channel = Column(String(20), default="email")
    subject = Column(String(500))
    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, default=dict)
    sent_at = Column(UTCDateTime, default=utcnow)

    negotiation = relationship("Negotiation", back_populates="messages")

    __table_args__ = (
        Index("ix_nm_negotiation", "negotiation_id", "id"),
    )
