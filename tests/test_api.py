import pandas as pd
from fastapi.testclient import TestClient

from services.api.main import create_app
from services.api.risk_service import RiskService
from services.api.settings import ServiceSettings
from services.blockchain.sources import FrameTransferSource
from services.errors import InvariantViolation
from services.graph.store import GraphStore

A, B, C, M, BAD = "A" * 32, "B" * 32, "C" * 32, "M" * 32, "F" * 32


TRANSFERS = pd.DataFrame(
    [
        {"src": A, "dst": B, "amount": 10.0, "timestamp": "2024-03-01T12:00:00Z", "signature": "s1"},
        {"src": B, "dst": C, "amount": 10.0, "timestamp": "2024-03-01T12:20:00Z", "signature": "s2"},
        {"src": C, "dst": A, "amount": 10.0, "timestamp": "2024-03-01T12:40:00Z", "signature": "s3"},
        {"src": A, "dst": M, "amount": 2000.0, "timestamp": "2024-03-01T03:00:00Z", "signature": "s4"},
    ]
)
LABELS = pd.DataFrame([{"address": M, "labels": "mixer"}])


class CountingSource(FrameTransferSource):
    def __init__(self, *args, fail_for=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_for = set(fail_for)
        self.calls = 0

    def fetch_transfers(self, address, timeout=None):
        self.calls += 1
        if address in self.fail_for:
            raise ConnectionError("upstream refused")
        return super().fetch_transfers(address, timeout)


def make_client(source=None, **settings):
    source = source or CountingSource(TRANSFERS, LABELS)
    cfg = ServiceSettings(**settings)
    service = RiskService(GraphStore(source), settings=cfg)
    return TestClient(create_app(service)), source


def test_health():
    client, _ = make_client()
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_risk_score_summary_and_details():
    client, _ = make_client()

    r = client.get("/risk/score", params={"address": A})
    assert r.status_code == 200
    body = r.json()
    assert body["address"] == A
    assert 0 <= body["riskScore"] <= 100
    assert body["riskLevel"] in ("low", "medium", "high")
    assert "lastUpdated" in body
    assert "factors" not in body

    r = client.get("/risk/score", params={"address": A, "includeDetails": "true"})
    factors = r.json()["factors"]
    assert factors
    assert {"name", "description", "impact", "weight", "details"} <= set(factors[0])


def test_risk_score_is_served_from_cache():
    client, source = make_client()
    client.get("/risk/score", params={"address": A})
    calls = source.calls
    client.get("/risk/score", params={"address": A})
    assert source.calls == calls


def test_loaded_graph_is_shared_across_queries():
    client, source = make_client()
    client.get("/risk/score", params={"address": A})
    calls = source.calls
    assert client.post("/clusters", json={"address": A}).status_code == 200
    assert client.get("/risk/explain", params={"address": A}).status_code == 200
    assert source.calls == calls


def test_invalid_or_missing_address_is_400():
    client, source = make_client()
    assert client.get("/risk/score", params={"address": "0xdeadbeef"}).status_code == 400
    r = client.get("/risk/score")
    assert r.status_code == 400
    assert r.json()["error"] == "wallet address is required"
    assert source.calls == 0


def test_upstream_failure_is_502():
    client, _ = make_client(CountingSource(TRANSFERS, fail_for={A}))
    r = client.get("/risk/score", params={"address": A})
    assert r.status_code == 502
    assert "upstream refused" in r.json()["error"]


def test_invariant_violation_is_500():
    class Broken(CountingSource):
        def fetch_wallets(self, addresses, timeout=None):
            raise InvariantViolation("wallet table is inconsistent")

    client, _ = make_client(Broken(TRANSFERS))
    r = client.get("/risk/score", params={"address": A})
    assert r.status_code == 500


def test_batch_of_101_is_rejected_before_any_work():
    client, source = make_client()
    r = client.post("/risk/batch", json={"addresses": [A] * 101})
    assert r.status_code == 400
    assert r.json()["limit"] == 100
    assert source.calls == 0


def test_batch_with_invalid_address_is_rejected_before_any_work():
    client, source = make_client()
    r = client.post("/risk/batch", json={"addresses": [A, "nope"]})
    assert r.status_code == 400
    assert source.calls == 0


def test_batch_reports_upstream_failures_inline():
    client, _ = make_client(CountingSource(TRANSFERS, fail_for={BAD}))
    r = client.post("/risk/batch", json={"addresses": [A, BAD], "includeDetails": True})
    assert r.status_code == 200
    results = r.json()["results"]
    assert results[0]["address"] == A and "factors" in results[0]
    assert results[1]["address"] == BAD and "error" in results[1]


def test_transaction_score():
    client, _ = make_client()
    r = client.get("/risk/transaction", params={"address": A, "txId": "s4"})
    assert r.status_code == 200
    body = r.json()
    assert body["txId"] == "s4"
    assert body["riskLevel"] == "high"

    assert client.get("/risk/transaction", params={"address": A, "txId": "zzz"}).status_code == 404


def test_explain():
    client, _ = make_client()
    r = client.get("/risk/explain", params={"address": A})
    assert r.status_code == 200
    assert r.json()["wallet"] == A


def test_clusters_for_address():
    client, _ = make_client(graph_depth=2)
    r = client.post("/clusters", json={"address": A})
    assert r.status_code == 200
    clusters = r.json()["clusters"]
    circular = [c for c in clusters if c["patternType"] == "circular-flow"]
    assert circular and circular[0]["riskLevel"] == "high"
    assert sorted(circular[0]["walletAddresses"]) == sorted([A, B, C])


def test_clusters_for_explicit_graph_with_pass_selection_and_thresholds():
    client, source = make_client()
    payload = {
        "graph": {
            "wallets": [{"address": C, "labels": ["exchange:Kraken"]}],
            "transfers": [
                {"source": A, "target": B, "value": 100, "timestamp": "2024-03-01T12:00:00Z"},
                {"source": B, "target": C, "value": 101, "timestamp": "2024-03-01T12:01:00Z"},
                {"source": A, "target": C, "value": 102, "timestamp": "2024-03-01T12:02:00Z"},
            ],
        },
        "passes": ["value-similarity"],
        "thresholds": {"structuring_high_count": 3},
    }
    r = client.post("/clusters", json=payload)
    assert r.status_code == 200
    clusters = r.json()["clusters"]
    assert [c["patternType"] for c in clusters] == ["value-similarity"]
    assert clusters[0]["riskLevel"] == "high"
    assert source.calls == 0


def test_clusters_request_validation():
    client, _ = make_client()
    assert client.post("/clusters", json={}).status_code == 400
    assert client.post("/clusters", json={"address": A, "passes": ["astrology"]}).status_code == 400
    assert client.post("/clusters", json={"address": "bad"}).status_code == 400


def test_inconsistent_wallet_snapshots_in_cluster_payload_are_400():
    client, _ = make_client()
    transfer = {"source": A, "target": B, "value": 5, "timestamp": "2024-03-01T12:00:00Z"}
    bad_wallets = [
        {"address": A, "balance": -1},
        {"address": A, "risk_level": "critical"},
        {"address": A, "transaction_count": -3},
        {"address": A, "first_activity": "2024-03-02T00:00:00Z", "last_activity": "2024-03-01T00:00:00Z"},
    ]
    for wallet in bad_wallets:
        r = client.post("/clusters", json={"graph": {"wallets": [wallet], "transfers": [transfer]}})
        assert r.status_code == 400, wallet


def test_entity_clusters():
    client, _ = make_client()
    body = {
        "entities": [
            {"id": "ex1", "category": "exchange", "counterparties": ["p", "q"], "transaction_count": 5000},
            {"id": "ex2", "category": "exchange", "counterparties": ["p", "q"], "transaction_count": 4000},
            {"id": "mx", "category": "mixer", "transaction_count": 3, "risk_score": 90},
        ],
        "min_similarity": 0.6,
    }
    r = client.post("/entities/clusters", json=body)
    assert r.status_code == 200
    clusters = r.json()["clusters"]
    assert clusters[0]["entities"] == ["ex1", "ex2"]
    assert clusters[1]["riskLevel"] == "high"

    dup = {"entities": [{"id": "a"}, {"id": "a"}]}
    assert client.post("/entities/clusters", json=dup).status_code == 400


def test_cache_endpoints():
    client, _ = make_client()
    client.get("/risk/score", params={"address": A})
    stats = client.get("/cache/stats").json()
    assert stats["entries"] >= 1

    r = client.post("/cache/cleanup")
    assert r.status_code == 200
    assert r.json()["evicted"] == 0
