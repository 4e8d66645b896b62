"""
Client for an upstream transfer service that already indexes the chain.

The service is expected to expose:
  GET {base_url}/transfers?address=<addr>&limit=<n>  -> {"transfers": [...]}
  GET {base_url}/wallets?addresses=<a,b,...>         -> {"wallets": [...]}

Transfer records use the field names understood by normalize_transfers
(source/target/value/timestamp/token/tx_id, or their aliases).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import requests

from services.errors import DataUnavailable
from services.graph.frames import wallets_from_records
from services.graph.models import WalletNode

logger = logging.getLogger(__name__)


class HttpTransferSource:
    """Fetch transfers and wallet snapshots from the upstream transfer service."""

    DEFAULT_TIMEOUT = 10.0
    # the wallets endpoint accepts at most this many addresses per call
    WALLET_CHUNK = 50

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_results: int = 10000,
        session: Optional[requests.Session] = None,
    ):
        """
        Args:
            base_url: Root URL of the transfer service
            api_key: Optional key sent as the X-API-Key header
            timeout: Per-request timeout in seconds when the caller gives none
            max_results: Maximum transfers requested per address
            session: Injected requests session (tests pass a fake)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_results = max_results
        self.session = session or requests.Session()
        if api_key:
            self.session.headers.update({"X-API-Key": api_key})

    def _get(self, path: str, params: Dict[str, Any], timeout: Optional[float]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.get(url, params=params, timeout=timeout or self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as exc:
            raise DataUnavailable(f"upstream timed out: GET {path}") from exc
        except requests.RequestException as exc:
            raise DataUnavailable(f"upstream request failed: GET {path}: {exc}") from exc
        except ValueError as exc:
            raise DataUnavailable(f"upstream returned invalid JSON: GET {path}") from exc

        if not isinstance(data, dict):
            raise DataUnavailable(f"unexpected upstream payload for GET {path}")
        if data.get("error"):
            raise DataUnavailable(f"upstream error for GET {path}: {data['error']}")
        return data

    def fetch_transfers(self, address: str, timeout: Optional[float] = None) -> pd.DataFrame:
        data = self._get("/transfers", {"address": address, "limit": self.max_results}, timeout)
        txs = data.get("transfers")
        if not isinstance(txs, list):
            raise DataUnavailable(f"upstream payload for {address} has no transfer list")

        logger.debug("Fetched %d transfers for %s", len(txs), address)
        return pd.DataFrame(txs[: self.max_results])

    def fetch_wallets(
        self, addresses: Iterable[str], timeout: Optional[float] = None
    ) -> Dict[str, WalletNode]:
        pending = sorted(set(addresses))
        records: List[Dict[str, Any]] = []

        for i in range(0, len(pending), self.WALLET_CHUNK):
            chunk = pending[i : i + self.WALLET_CHUNK]
            data = self._get("/wallets", {"addresses": ",".join(chunk)}, timeout)
            wallets = data.get("wallets", [])
            if not isinstance(wallets, list):
                raise DataUnavailable("upstream wallet payload is not a list")
            records.extend(wallets)

        return wallets_from_records(records)
