"""DelegationDatum model"""
from sqlalchemy import Column, String, Text, JSON, DateTime
from datetime import datetime, timezone
from redemption_engine.models.base import Base, new_uuid


class DelegationDatum(Base):
    """Signed authorization letting the engine move funds for the delegator.

    Stored once when the subscription is created and never mutated here.
    """
    __tablename__ = "delegation_data"

    id = Column(String(36), primary_key=True, default=new_uuid)
    delegate = Column(String(255), nullable=False)
    delegator = Column(String(255), nullable=False, index=True)
    authority = Column(String(255), nullable=False)
    caveats = Column(JSON, nullable=False, default=list)
    salt = Column(String(255), nullable=False)
    signature = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
