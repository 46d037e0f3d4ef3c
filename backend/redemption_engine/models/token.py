"""Token model"""
from sqlalchemy import Column, Integer, String, ForeignKey
from sqlalchemy.orm import relationship
from redemption_engine.models.base import Base, new_uuid


class Token(Base):
    """ERC-20 token accepted for payment"""
    __tablename__ = "tokens"

    id = Column(String(36), primary_key=True, default=new_uuid)
    network_id = Column(String(36), ForeignKey("networks.id"), nullable=False, index=True)
    symbol = Column(String(20), nullable=False)
    contract_address = Column(String(255), nullable=False)
    decimals = Column(Integer, nullable=False, default=18)

    network = relationship("Network")
