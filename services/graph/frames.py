"""
Tabular transfer payloads -> graph primitives.

Every transfer source (CSV file, SQL table, upstream HTTP service) hands its
rows to these helpers as a DataFrame, so column aliases, timestamp parsing and
row filtering live in one place.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

import pandas as pd

from services.graph.models import NATIVE_TOKEN, TransferEdge, WalletNode

logger = logging.getLogger(__name__)

TRANSFER_COLUMNS = ["source", "target", "value", "timestamp", "token", "tx_id"]

# accepted spellings from the feeds we read (simulator CSVs, db rows, explorers)
COLUMN_ALIASES = {
    "src": "source",
    "sender": "source",
    "from": "source",
    "from_address": "source",
    "dst": "target",
    "receiver": "target",
    "to": "target",
    "to_address": "target",
    "amount": "value",
    "ts": "timestamp",
    "timeStamp": "timestamp",
    "block_timestamp": "timestamp",
    "signature": "tx_id",
    "hash": "tx_id",
}


def _parse_timestamps(col: pd.Series) -> pd.Series:
    if pd.api.types.is_datetime64_any_dtype(col):
        return pd.to_datetime(col, utc=True)
    if pd.api.types.is_numeric_dtype(col):
        return pd.to_datetime(col, unit="s", utc=True, errors="coerce")

    numeric = pd.to_numeric(col, errors="coerce")
    if len(col) and numeric.notna().all():
        # explorers return unix seconds as strings
        return pd.to_datetime(numeric, unit="s", utc=True)
    return pd.to_datetime(col, utc=True, errors="coerce", format="ISO8601")


def normalize_transfers(txs: pd.DataFrame, default_token: str = NATIVE_TOKEN) -> pd.DataFrame:
    """
    Rename aliased columns, coerce types and drop unusable rows.

    Rows with a non-positive or unparsable value, an unparsable timestamp or an
    empty endpoint are dropped. Missing required columns raise ValueError.
    """
    renames = {
        alias: canonical
        for alias, canonical in COLUMN_ALIASES.items()
        if alias in txs.columns and canonical not in txs.columns
    }
    df = txs.rename(columns=renames)

    required = {"source", "target", "value", "timestamp"}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns: {sorted(missing)}")

    if df.empty:
        return pd.DataFrame(columns=TRANSFER_COLUMNS)

    source = df["source"].astype("string").str.strip()
    target = df["target"].astype("string").str.strip()
    value = pd.to_numeric(df["value"], errors="coerce")
    timestamp = _parse_timestamps(df["timestamp"])

    if "token" in df.columns:
        token = df["token"].astype("string").fillna(default_token)
    else:
        token = pd.Series(default_token, index=df.index, dtype="string")

    if "tx_id" in df.columns:
        tx_id = df["tx_id"].astype("string")
    else:
        tx_id = pd.Series(pd.NA, index=df.index, dtype="string")

    out = pd.DataFrame(
        {
            "source": source,
            "target": target,
            "value": value,
            "timestamp": timestamp,
            "token": token,
            "tx_id": tx_id,
        }
    )

    keep = (
        out["source"].fillna("").ne("")
        & out["target"].fillna("").ne("")
        & out["value"].gt(0)
        & out["timestamp"].notna()
    )
    dropped = int((~keep).sum())
    if dropped:
        logger.debug("Dropped %d unusable transfer rows", dropped)

    return out[keep].reset_index(drop=True)


def edges_from_frame(txs: pd.DataFrame, default_token: str = NATIVE_TOKEN) -> List[TransferEdge]:
    df = normalize_transfers(txs, default_token=default_token)
    edges: List[TransferEdge] = []
    for row in df.itertuples(index=False):
        edges.append(
            TransferEdge(
                source=str(row.source),
                target=str(row.target),
                value=float(row.value),
                timestamp=row.timestamp.to_pydatetime(),
                token=str(row.token),
                tx_id=None if pd.isna(row.tx_id) else str(row.tx_id),
            )
        )
    return edges


def _split_labels(raw: object) -> frozenset:
    if raw is None or (isinstance(raw, float) and pd.isna(raw)):
        return frozenset()
    if isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset(str(x).strip() for x in raw if str(x).strip())
    text = str(raw)
    for sep in ("|", ","):
        text = text.replace(sep, ";")
    return frozenset(part.strip() for part in text.split(";") if part.strip())


def _optional_ts(raw: object):
    if raw is None:
        return None
    ts = pd.to_datetime(raw, utc=True, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def wallets_from_records(records: Iterable[Dict]) -> Dict[str, WalletNode]:
    """
    Wallet snapshots keyed by address.

    Recognised keys: address, balance, transaction_count (or tx_count),
    first_activity, last_activity, labels, risk_level.
    """
    wallets: Dict[str, WalletNode] = {}
    for r in records:
        address = str(r.get("address") or "").strip()
        if not address:
            continue

        count = r.get("transaction_count", r.get("tx_count", 0))
        level: Optional[str] = r.get("risk_level") or None
        if isinstance(level, float) and pd.isna(level):
            level = None

        wallets[address] = WalletNode(
            address=address,
            balance=float(r.get("balance") or 0.0),
            transaction_count=int(count or 0),
            first_activity=_optional_ts(r.get("first_activity")),
            last_activity=_optional_ts(r.get("last_activity")),
            labels=_split_labels(r.get("labels")),
            risk_level=level.lower() if level else None,
        )
    return wallets


def wallets_from_frame(df: pd.DataFrame) -> Dict[str, WalletNode]:
    if df.empty:
        return {}
    records = df.astype(object).where(df.notna(), None).to_dict(orient="records")
    return wallets_from_records(records)
