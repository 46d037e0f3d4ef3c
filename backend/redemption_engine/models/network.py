"""Network model"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone
from redemption_engine.models.base import Base, new_uuid


class Network(Base):
    """Blockchain network a token lives on"""
    __tablename__ = "networks"

    id = Column(String(36), primary_key=True, default=new_uuid)
    name = Column(String(100), nullable=False)  # 'ethereum', 'base', 'polygon', ...
    chain_id = Column(Integer, nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
