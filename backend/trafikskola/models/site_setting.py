# backend/trafikskola/models/site_setting.py
from sqlalchemy import Column, DateTime, String, Text
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base


class SiteSetting(Base):
    """Admin-editable key/value settings grouped by category (e.g. ``payment``)."""

    __tablename__ = "site_settings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    key = Column(String(100), nullable=False, unique=True)
    value = Column(Text, nullable=True)
    category = Column(String(50), nullable=False, index=True)
    description = Column(String(255), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utc_now, onupdate=utc_now)
