"""
Transfer sources: where the graph store gets raw transfers and wallet snapshots.

A source answers two questions for the store:
  - fetch_transfers(address, timeout) -> DataFrame of transfers touching address
  - fetch_wallets(addresses, timeout) -> wallet snapshot records

Sources report any upstream failure as DataUnavailable; they never invent data.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Protocol

import pandas as pd

from services.errors import DataUnavailable
from services.graph.frames import COLUMN_ALIASES, wallets_from_frame
from services.graph.models import WalletNode

logger = logging.getLogger(__name__)


class TransferSource(Protocol):
    def fetch_transfers(self, address: str, timeout: Optional[float] = None) -> pd.DataFrame:
        ...

    def fetch_wallets(
        self, addresses: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, WalletNode]:
        ...


def _endpoint_columns(df: pd.DataFrame) -> List[str]:
    cols = []
    for canonical in ("source", "target"):
        if canonical in df.columns:
            cols.append(canonical)
            continue
        for alias, target in COLUMN_ALIASES.items():
            if target == canonical and alias in df.columns:
                cols.append(alias)
                break
    if len(cols) != 2:
        raise ValueError(f"Missing columns: cannot find transfer endpoints in {list(df.columns)}")
    return cols


class FrameTransferSource:
    """
    In-memory transfers, e.g. the CSV written by the simulator or an export.
    Mirrors the API's TX_SOURCE=csv mode.
    """

    def __init__(self, transfers: pd.DataFrame, wallets: Optional[pd.DataFrame] = None):
        self._src_col, self._dst_col = _endpoint_columns(transfers)
        self._transfers = transfers.reset_index(drop=True)
        self._wallets = wallets_from_frame(wallets) if wallets is not None else {}

    @classmethod
    def from_csv(cls, tx_path: str, labels_path: Optional[str] = None) -> "FrameTransferSource":
        try:
            txs = pd.read_csv(tx_path)
            wallets = pd.read_csv(labels_path) if labels_path else None
        except (OSError, pd.errors.ParserError) as exc:
            raise DataUnavailable(f"cannot read transfers from {tx_path}: {exc}") from exc
        logger.info("Loaded %d transfers from CSV %s", len(txs), tx_path)
        return cls(txs, wallets)

    def fetch_transfers(self, address: str, timeout: Optional[float] = None) -> pd.DataFrame:
        df = self._transfers
        mask = df[self._src_col].astype(str).eq(address) | df[self._dst_col].astype(str).eq(address)
        return df[mask]

    def fetch_wallets(
        self, addresses: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, WalletNode]:
        return {a: self._wallets[a] for a in addresses if a in self._wallets}
