import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from services.blockchain.http_source import HttpTransferSource
from services.blockchain.sources import FrameTransferSource, TransferSource

logger = logging.getLogger(__name__)

TX_SOURCES = ("csv", "db", "http")


def _optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class ServiceSettings:
    tx_source: str = "csv"
    tx_path: str = "data/transactions.csv"
    labels_path: Optional[str] = None
    database_url: Optional[str] = None
    upstream_url: Optional[str] = None
    upstream_api_key: Optional[str] = None
    upstream_timeout: float = 10.0
    load_timeout: Optional[float] = 30.0
    graph_depth: int = 1
    cache_ttl_seconds: float = 300.0
    max_batch_size: int = 100
    reference_tz: str = "UTC"

    def __post_init__(self):
        if self.tx_source not in TX_SOURCES:
            raise ValueError(f"TX_SOURCE must be one of {TX_SOURCES}, got {self.tx_source!r}")
        if self.graph_depth < 1:
            raise ValueError(f"GRAPH_DEPTH must be >= 1, got {self.graph_depth}")
        if self.max_batch_size < 1:
            raise ValueError(f"MAX_BATCH_SIZE must be >= 1, got {self.max_batch_size}")
        if self.tx_source == "http" and not self.upstream_url:
            raise ValueError("TX_SOURCE=http requires UPSTREAM_URL")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ServiceSettings":
        env = os.environ if env is None else env
        return cls(
            tx_source=env.get("TX_SOURCE", "csv").lower(),
            tx_path=env.get("TX_PATH", "data/transactions.csv"),
            labels_path=env.get("LABELS_PATH") or None,
            database_url=env.get("DATABASE_URL") or None,
            upstream_url=env.get("UPSTREAM_URL") or None,
            upstream_api_key=env.get("UPSTREAM_API_KEY") or None,
            upstream_timeout=float(env.get("UPSTREAM_TIMEOUT", "10")),
            load_timeout=_optional_float(env.get("LOAD_TIMEOUT", "30")),
            graph_depth=int(env.get("GRAPH_DEPTH", "1")),
            cache_ttl_seconds=float(env.get("CACHE_TTL_SECONDS", "300")),
            max_batch_size=int(env.get("MAX_BATCH_SIZE", "100")),
            reference_tz=env.get("REFERENCE_TZ", "UTC"),
        )


def build_source(settings: ServiceSettings) -> TransferSource:
    """Transfer source for the configured TX_SOURCE; nothing is read until the first load."""
    logger.info("Using %s transfer source", settings.tx_source)
    if settings.tx_source == "db":
        from services.api.db import DATABASE_URL, get_engine, make_sessionmaker
        from services.blockchain.sql_source import SqlTransferSource

        engine = get_engine(settings.database_url or DATABASE_URL)
        return SqlTransferSource(make_sessionmaker(engine))

    if settings.tx_source == "http":
        return HttpTransferSource(
            settings.upstream_url,
            api_key=settings.upstream_api_key,
            timeout=settings.upstream_timeout,
        )

    return LazyCsvSource(settings.tx_path, settings.labels_path)


class LazyCsvSource:
    """Reads the CSV on first use so the API starts even before the file exists."""

    def __init__(self, tx_path: str, labels_path: Optional[str] = None):
        self.tx_path = tx_path
        self.labels_path = labels_path
        self._source: Optional[FrameTransferSource] = None

    def _load(self) -> FrameTransferSource:
        if self._source is None:
            self._source = FrameTransferSource.from_csv(self.tx_path, self.labels_path)
        return self._source

    def fetch_transfers(self, address, timeout=None):
        return self._load().fetch_transfers(address, timeout=timeout)

    def fetch_wallets(self, addresses, timeout=None):
        return self._load().fetch_wallets(addresses, timeout=timeout)
