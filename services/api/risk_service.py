"""
Request-level orchestration: load a graph, run the engines, cache the result.

Every query works on its own immutable graph; the result cache is the only
state shared between requests.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from services.api.settings import ServiceSettings, build_source
from services.cache.result_cache import ResultCache, entity_batch_hash, make_key
from services.clustering.detector import PATTERN_TYPES, ClusterConfig, ClusterDetector
from services.clustering.entities import Entity, EntityClusterer
from services.errors import BatchTooLarge, DataUnavailable, InvariantViolation
from services.graph.frames import edges_from_frame, wallets_from_records
from services.graph.models import TransactionGraph
from services.graph.store import GraphStore, validate_address
from services.scoring.factors import RiskFactor
from services.scoring.risk_engine import RiskScoringEngine

logger = logging.getLogger(__name__)


def factor_to_dict(f: RiskFactor) -> Dict[str, Any]:
    return {
        "name": f.name,
        "description": f.description,
        "impact": f.impact,
        "weight": f.weight,
        "details": list(f.details),
    }


def cluster_config_with(base: ClusterConfig, overrides: Optional[Mapping[str, Any]]) -> ClusterConfig:
    """Apply caller thresholds; temporal_window may be given in seconds."""
    if not overrides:
        return base
    known = {f.name for f in dataclasses.fields(ClusterConfig)}
    changes: Dict[str, Any] = {}
    for name, value in overrides.items():
        if value is None:
            continue
        if name == "temporal_window_seconds":
            changes["temporal_window"] = timedelta(seconds=float(value))
        elif name == "exchange_labels":
            changes[name] = frozenset(str(v).lower() for v in value)
        elif name in known:
            changes[name] = value
        else:
            raise ValueError(f"unknown cluster threshold {name!r}")
    return dataclasses.replace(base, **changes)


def graph_from_payload(payload: Mapping[str, Any], reference_tz: str = "UTC") -> TransactionGraph:
    """Build a graph from an explicit {wallets, transfers} body instead of loading one."""
    transfers = list(payload.get("transfers") or [])
    wallet_records = list(payload.get("wallets") or [])

    for rec in wallet_records:
        validate_address(rec.get("address"))
    edges = edges_from_frame(pd.DataFrame(transfers)) if transfers else []
    for e in edges:
        validate_address(e.source)
        validate_address(e.target)

    try:
        return TransactionGraph.from_transfers(
            edges,
            wallets=wallets_from_records(wallet_records),
            include=[rec["address"] for rec in wallet_records],
            reference_tz=reference_tz,
        )
    except InvariantViolation as exc:
        # caller-supplied snapshots; inconsistent ones are a bad request
        raise ValueError(str(exc)) from exc


class RiskService:
    def __init__(
        self,
        store: GraphStore,
        engine: Optional[RiskScoringEngine] = None,
        detector: Optional[ClusterDetector] = None,
        entity_clusterer: Optional[EntityClusterer] = None,
        cache: Optional[ResultCache] = None,
        settings: ServiceSettings = ServiceSettings(),
    ):
        self.store = store
        self.engine = engine or RiskScoringEngine()
        self.detector = detector or ClusterDetector()
        self.entity_clusterer = entity_clusterer or EntityClusterer()
        self.cache = cache or ResultCache(default_ttl=settings.cache_ttl_seconds)
        self.settings = settings

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> "RiskService":
        store = GraphStore(
            build_source(settings),
            reference_tz=settings.reference_tz,
            default_timeout=settings.load_timeout,
        )
        return cls(store, settings=settings)

    def load_graph(self, address: str, cancel: Optional[threading.Event] = None) -> TransactionGraph:
        validate_address(address)
        depth = self.settings.graph_depth
        key = make_key("graph", address, {"depth": depth})
        return self.cache.get_or_compute(key, lambda: self.store.load(address, depth=depth, cancel=cancel))

    def risk_query(
        self,
        address: str,
        include_details: bool = False,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        validate_address(address)
        key = make_key("risk", address, {"depth": self.settings.graph_depth, "details": include_details})
        cached, found = self.cache.get(key)
        if found:
            return cached

        graph = self.load_graph(address, cancel=cancel)
        score = self.engine.score(graph, address)
        result: Dict[str, Any] = {
            "address": address,
            "riskScore": score.value,
            "riskLevel": score.level,
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        if include_details:
            result["factors"] = [factor_to_dict(f) for f in score.factors]

        self.cache.set(key, result)
        return result

    def batch_risk_query(self, addresses: Sequence[str], include_details: bool = False) -> List[Dict[str, Any]]:
        """
        Score several wallets. The whole batch is rejected before any work when it
        is too large or any address is malformed; an upstream failure only affects
        its own entry.
        """
        limit = self.settings.max_batch_size
        if len(addresses) > limit:
            raise BatchTooLarge(len(addresses), limit)
        for address in addresses:
            validate_address(address)

        results = []
        for address in addresses:
            try:
                results.append(self.risk_query(address, include_details))
            except DataUnavailable as exc:
                logger.warning("Batch entry %s failed: %s", address, exc)
                results.append({"address": address, "error": str(exc)})
        return results

    def transaction_risk_query(self, address: str, tx_id: str) -> Dict[str, Any]:
        validate_address(address)
        key = make_key("tx-risk", address, {"depth": self.settings.graph_depth, "tx_id": tx_id})
        cached, found = self.cache.get(key)
        if found:
            return cached

        graph = self.load_graph(address)
        score = self.engine.score_transaction(graph, tx_id)
        result = {
            "address": address,
            "txId": score.tx_id,
            "riskScore": score.value,
            "riskLevel": score.level,
            "factors": [factor_to_dict(f) for f in score.factors],
        }
        self.cache.set(key, result)
        return result

    def explain_query(self, address: str) -> Dict[str, Any]:
        graph = self.load_graph(address)
        return self.engine.explain(graph, address)

    def cluster_query(
        self,
        address: Optional[str] = None,
        graph: Optional[Mapping[str, Any]] = None,
        passes: Optional[Iterable[str]] = None,
        thresholds: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if (address is None) == (graph is None):
            raise ValueError("provide exactly one of address or graph")

        cfg = cluster_config_with(self.detector.cfg, thresholds)
        passes = list(passes) if passes is not None else None
        unknown = sorted(set(passes or ()) - set(PATTERN_TYPES))
        if unknown:
            raise ValueError(f"unknown detection pass(es): {unknown}")
        params = {
            "depth": self.settings.graph_depth,
            "passes": passes,
            "thresholds": dict(thresholds or {}),
        }
        if address is not None:
            validate_address(address)
            key = make_key("clusters", address, params)
        else:
            key = make_key("clusters", "payload", {**params, "graph": graph})

        cached, found = self.cache.get(key)
        if found:
            return cached

        if address is not None:
            g = self.load_graph(address)
        else:
            g = graph_from_payload(graph, reference_tz=self.settings.reference_tz)

        clusters = self.detector.detect_clusters(g, passes=passes, cfg=cfg)
        result = [c.to_dict() for c in clusters]
        self.cache.set(key, result)
        return result

    def entity_cluster_query(
        self, entities: Sequence[Entity], min_similarity: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        clusterer = self.entity_clusterer
        if min_similarity is not None and min_similarity != clusterer.min_similarity:
            clusterer = EntityClusterer(min_similarity=min_similarity, weights=clusterer.weights)

        key = make_key(
            "entity-clusters",
            entity_batch_hash(entities),
            {"min_similarity": clusterer.min_similarity},
        )
        cached, found = self.cache.get(key)
        if found:
            return cached

        result = [c.to_dict() for c in clusterer.cluster_entities(entities)]
        self.cache.set(key, result)
        return result
