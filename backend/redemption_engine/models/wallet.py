"""Wallet model"""
from sqlalchemy import Column, String
from redemption_engine.models.base import Base, new_uuid


class Wallet(Base):
    """Merchant wallet receiving redeemed funds"""
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=new_uuid)
    workspace_id = Column(String(36), nullable=False, index=True)
    wallet_address = Column(String(255), nullable=False)
