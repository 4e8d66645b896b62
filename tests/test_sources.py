import re
from datetime import datetime, timezone
from types import SimpleNamespace

import pandas as pd
import pytest
import requests
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from services.api.db import Base, make_sessionmaker
from services.api.models import Transfer, Wallet
from services.blockchain.http_source import HttpTransferSource
from services.blockchain.sources import FrameTransferSource
from services.blockchain.sql_source import SqlTransferSource
from services.errors import DataUnavailable
from services.graph.frames import edges_from_frame
from services.graph.store import GraphStore

A, B, C = "A" * 32, "B" * 32, "C" * 32
T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# --- CSV / DataFrame ----------------------------------------------------------


def test_frame_source_filters_by_either_endpoint_using_aliases():
    txs = pd.DataFrame(
        [
            {"sender": A, "receiver": B, "amount": 1.0, "timestamp": "2024-03-01T12:00:00Z"},
            {"sender": B, "receiver": C, "amount": 2.0, "timestamp": "2024-03-01T12:05:00Z"},
            {"sender": C, "receiver": A, "amount": 3.0, "timestamp": "2024-03-01T12:10:00Z"},
        ]
    )
    source = FrameTransferSource(txs)

    got = source.fetch_transfers(A)
    assert len(got) == 2
    assert sorted(e.value for e in edges_from_frame(got)) == [1.0, 3.0]


def test_frame_source_from_csv_reads_labels(tmp_path):
    tx_path = tmp_path / "transactions.csv"
    labels_path = tmp_path / "labels.csv"
    pd.DataFrame(
        [{"src": A, "dst": B, "amount": 5.0, "timestamp": "2024-03-01T12:00:00Z"}]
    ).to_csv(tx_path, index=False)
    pd.DataFrame([{"address": B, "labels": "mixer|scam", "balance": 12.5}]).to_csv(labels_path, index=False)

    source = FrameTransferSource.from_csv(str(tx_path), str(labels_path))
    wallets = source.fetch_wallets([A, B])

    assert set(wallets) == {B}
    assert wallets[B].labels == frozenset({"mixer", "scam"})
    assert wallets[B].balance == 12.5


def test_frame_source_from_missing_csv_is_data_unavailable(tmp_path):
    with pytest.raises(DataUnavailable):
        FrameTransferSource.from_csv(str(tmp_path / "missing.csv"))


# --- SQL ----------------------------------------------------------------------


def sqlite_sessionmaker():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return make_sessionmaker(engine)


def test_sql_source_reads_transfers_and_wallets():
    Session = sqlite_sessionmaker()
    db = Session()
    db.add_all(
        [
            Transfer(tx_id="sig1", sender=A, receiver=B, amount=10.0, token="SOL", timestamp=T0),
            Transfer(tx_id="sig2", sender=B, receiver=C, amount=4.0, token="USDC", timestamp=T0),
            Wallet(address=B, balance=3.0, transaction_count=7, labels="exchange:Binance", risk_level="low"),
        ]
    )
    db.commit()
    db.close()

    source = SqlTransferSource(Session)
    edges = edges_from_frame(source.fetch_transfers(A))
    assert [(e.source, e.target, e.value, e.tx_id) for e in edges] == [(A, B, 10.0, "sig1")]
    # sqlite hands back naive datetimes; they are read as UTC
    assert edges[0].timestamp == T0

    wallets = source.fetch_wallets([A, B])
    assert set(wallets) == {B}
    assert wallets[B].transaction_count == 7
    assert wallets[B].labels == frozenset({"exchange:Binance"})


def test_sql_source_feeds_graph_store():
    Session = sqlite_sessionmaker()
    db = Session()
    db.add(Transfer(tx_id="sig1", sender=A, receiver=B, amount=10.0, token="SOL", timestamp=T0))
    db.commit()
    db.close()

    g = GraphStore(SqlTransferSource(Session)).load(B)
    assert set(g.nodes) == {A, B}
    assert g.edges[0].token == "SOL"


def test_sql_source_missing_table_is_data_unavailable():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    source = SqlTransferSource(make_sessionmaker(engine))
    with pytest.raises(DataUnavailable):
        source.fetch_transfers(A)


class SlowPostgresSession:
    """Postgres-like session whose queries run for query_seconds unless statement_timeout cancels them."""

    def __init__(self, query_seconds):
        self.query_seconds = query_seconds
        self.statements = []
        self.closed = False

    def get_bind(self):
        return SimpleNamespace(dialect=SimpleNamespace(name="postgresql"))

    def execute(self, statement):
        self.statements.append(str(statement))

    def query(self, *entities):
        return self

    def filter(self, *criteria):
        return self

    def order_by(self, *clauses):
        return self

    def limit(self, n):
        return self

    def all(self):
        limits = [int(m) for s in self.statements for m in re.findall(r"statement_timeout = (\d+)", s)]
        if limits and self.query_seconds * 1000 > limits[-1]:
            raise OperationalError("SELECT", {}, Exception("canceling statement due to statement timeout"))
        return []

    def close(self):
        self.closed = True


def test_sql_source_bounds_statements_by_remaining_load_time():
    session = SlowPostgresSession(query_seconds=3600)
    store = GraphStore(SqlTransferSource(lambda: session))
    with pytest.raises(DataUnavailable):
        store.load(A, timeout=0.5)

    [statement] = session.statements
    ms = int(re.search(r"statement_timeout = (\d+)", statement).group(1))
    assert 1 <= ms <= 500
    assert session.closed


def test_sql_source_without_timeout_sets_no_limit():
    session = SlowPostgresSession(query_seconds=0)
    source = SqlTransferSource(lambda: session)
    assert source.fetch_transfers(A).empty
    assert source.fetch_wallets([A]) == {}
    assert session.statements == []


# --- HTTP ---------------------------------------------------------------------


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def test_http_source_fetches_transfers():
    session = FakeSession(
        [
            FakeResponse(
                {
                    "transfers": [
                        {"from": A, "to": B, "amount": "2.5", "timestamp": 1709294400, "signature": "sig9"}
                    ]
                }
            )
        ]
    )
    source = HttpTransferSource("http://upstream/", api_key="k", session=session)

    edges = edges_from_frame(source.fetch_transfers(A, timeout=3))

    assert edges[0].tx_id == "sig9"
    assert edges[0].value == 2.5
    url, params, timeout = session.calls[0]
    assert url == "http://upstream/transfers"
    assert params["address"] == A
    assert timeout == 3
    assert session.headers["X-API-Key"] == "k"


def test_http_source_chunks_wallet_requests():
    addresses = [f"W{i:03d}" for i in range(120)]
    session = FakeSession([FakeResponse({"wallets": []}) for _ in range(3)])
    source = HttpTransferSource("http://upstream", session=session)

    assert source.fetch_wallets(addresses) == {}
    assert len(session.calls) == 3
    assert all(len(c[1]["addresses"].split(",")) <= 50 for c in session.calls)


@pytest.mark.parametrize(
    "response",
    [
        requests.ConnectionError("refused"),
        requests.Timeout("slow"),
        FakeResponse({}, status=503),
        FakeResponse(ValueError("not json")),
        FakeResponse(["not", "a", "dict"]),
        FakeResponse({"error": "rate limited"}),
        FakeResponse({"transfers": "nope"}),
    ],
)
def test_http_source_upstream_problems_are_data_unavailable(response):
    source = HttpTransferSource("http://upstream", session=FakeSession([response]))
    with pytest.raises(DataUnavailable):
        source.fetch_transfers(A)
