from __future__ import annotations

from typing import Iterable, List

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import Transfer, Wallet


def fetch_transfers_touching(db: Session, address: str, limit: int = 10000) -> List[Transfer]:
    return (
        db.query(Transfer)
        .filter(or_(Transfer.sender == address, Transfer.receiver == address))
        .order_by(Transfer.timestamp, Transfer.id)
        .limit(limit)
        .all()
    )


def fetch_wallets(db: Session, addresses: Iterable[str]) -> List[Wallet]:
    wanted = sorted(set(addresses))
    if not wanted:
        return []
    return db.query(Wallet).filter(Wallet.address.in_(wanted)).all()
