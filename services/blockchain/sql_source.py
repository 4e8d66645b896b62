from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, Optional

import pandas as pd
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from services.api import crud
from services.errors import DataUnavailable
from services.graph.frames import wallets_from_records
from services.graph.models import WalletNode

logger = logging.getLogger(__name__)


def bound_statements(db: Session, timeout: Optional[float]) -> None:
    """
    Cap every statement in the current transaction at the remaining load time.

    Only PostgreSQL enforces this server-side; a cancelled statement comes back
    as an OperationalError. Other backends run unbounded.
    """
    if timeout is None:
        return
    if db.get_bind().dialect.name != "postgresql":
        logger.debug("No statement timeout for %s backend", db.get_bind().dialect.name)
        return
    # 0 disables the limit in postgres
    ms = max(1, math.ceil(timeout * 1000))
    db.execute(text(f"SET LOCAL statement_timeout = {ms}"))


class SqlTransferSource:
    """Transfers ingested into the `transfers` table (the API's TX_SOURCE=db mode)."""

    def __init__(self, session_factory: sessionmaker, max_results: int = 10000):
        self.session_factory = session_factory
        self.max_results = max_results

    def fetch_transfers(self, address: str, timeout: Optional[float] = None) -> pd.DataFrame:
        db = self.session_factory()
        try:
            bound_statements(db, timeout)
            rows = crud.fetch_transfers_touching(db, address, limit=self.max_results)
        except SQLAlchemyError as exc:
            raise DataUnavailable(f"transfer table not readable: {exc}") from exc
        finally:
            db.close()

        transfers = [
            {
                "tx_id": r.tx_id,
                "sender": r.sender,
                "receiver": r.receiver,
                "amount": float(r.amount or 0.0),
                "token": r.token,
                "timestamp": r.timestamp,
            }
            for r in rows
        ]
        return pd.DataFrame(
            transfers, columns=["tx_id", "sender", "receiver", "amount", "token", "timestamp"]
        )

    def fetch_wallets(
        self, addresses: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, WalletNode]:
        db = self.session_factory()
        try:
            bound_statements(db, timeout)
            rows = crud.fetch_wallets(db, addresses)
        except SQLAlchemyError as exc:
            raise DataUnavailable(f"wallet table not readable: {exc}") from exc
        finally:
            db.close()

        return wallets_from_records(
            {
                "address": r.address,
                "balance": r.balance,
                "transaction_count": r.transaction_count,
                "first_activity": r.first_activity,
                "last_activity": r.last_activity,
                "labels": r.labels,
                "risk_level": r.risk_level,
            }
            for r in rows
        )
