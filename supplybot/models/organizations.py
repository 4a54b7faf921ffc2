"""Organization model — the tenant that owns inventory, suppliers and negotiations."""

from sqlalchemy import JSON, Column, Integer, String

from ..database import UTCDateTime
from ..utils import utcnow
from .base import Base


class Organization(Base):
    __tablename__ = "organizations"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    industry = Column(String(255))
    size = Column(String(50))
    settings = Column(JSON, default=dict)
    created_at = Column(UTCDateTime, default=utcnow)
