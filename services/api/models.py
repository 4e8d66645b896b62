from sqlalchemy import Column, DateTime, Float, Integer, String, func

from services.api.db import Base


class Transfer(Base):
    __tablename__ = "transfers"

    id = Column(Integer, primary_key=True, index=True)
    tx_id = Column(String, index=True, nullable=True)  # signature; parallel rows may share none
    sender = Column(String, index=True, nullable=False)
    receiver = Column(String, index=True, nullable=False)
    amount = Column(Float, nullable=False)
    token = Column(String, nullable=False, default="SOL")
    timestamp = Column(DateTime(timezone=True), nullable=False)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Wallet(Base):
    __tablename__ = "wallets"

    address = Column(String, primary_key=True)
    balance = Column(Float, nullable=False, default=0.0)
    transaction_count = Column(Integer, nullable=False, default=0)
    first_activity = Column(DateTime(timezone=True), nullable=True)
    last_activity = Column(DateTime(timezone=True), nullable=True)
    labels = Column(String, nullable=False, default="")  # ";"-separated entity labels
    risk_level = Column(String, nullable=True)  # level from the last persisted scoring run
