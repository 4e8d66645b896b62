"""
Rule-based cluster detection over a TransactionGraph.

Passes run independently and may overlap: one wallet can sit in a temporal
cluster, a value-similarity cluster and a cycle at the same time. Each pass
judges risk for its own pattern; wallet risk scores are not consulted.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
import dataclasses
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

import networkx as nx
import pandas as pd

from services.graph.models import TransactionGraph, TransferEdge

logger = logging.getLogger(__name__)

TEMPORAL = "temporal"
VALUE_SIMILARITY = "value-similarity"
CIRCULAR_FLOW = "circular-flow"
EXCHANGE_INTERACTION = "exchange-interaction"
PATTERN_TYPES: Tuple[str, ...] = (TEMPORAL, VALUE_SIMILARITY, CIRCULAR_FLOW, EXCHANGE_INTERACTION)

RISK_ORDER = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class Cluster:
    id: str
    pattern_type: str
    name: str
    description: str
    wallet_addresses: FrozenSet[str]
    transactions: Tuple[TransferEdge, ...]
    risk_level: str

    @property
    def transaction_count(self) -> int:
        return len(self.transactions)

    @property
    def total_value(self) -> float:
        return sum(e.value for e in self.transactions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "patternType": self.pattern_type,
            "walletAddresses": sorted(self.wallet_addresses),
            "walletCount": len(self.wallet_addresses),
            "transactionCount": self.transaction_count,
            "totalValue": round(self.total_value, 9),
            "riskLevel": self.risk_level,
            "transactions": [e.id for e in self.transactions],
        }


def make_cluster(
    pattern_type: str,
    name: str,
    description: str,
    edges: Sequence[TransferEdge],
    risk_level: str,
    key: str = "",
) -> Cluster:
    """
    Wallet membership is derived from the edges, so every member is an endpoint.

    The id hashes the pattern type, the key (exchange name, time bucket or
    cycle wallet set) and the member transfer ids.
    """
    if pattern_type not in PATTERN_TYPES:
        raise ValueError(f"unknown pattern type {pattern_type!r}")
    if risk_level not in RISK_ORDER:
        raise ValueError(f"unknown risk level {risk_level!r}")

    wallets: Set[str] = set()
    for e in edges:
        wallets.add(e.source)
        wallets.add(e.target)

    digest = hashlib.sha256(
        "|".join([pattern_type, key, *sorted(e.id for e in edges)]).encode()
    ).hexdigest()
    return Cluster(
        id=f"{pattern_type}-{digest[:16]}",
        pattern_type=pattern_type,
        name=name,
        description=description,
        wallet_addresses=frozenset(wallets),
        transactions=tuple(edges),
        risk_level=risk_level,
    )


@dataclass(frozen=True)
class ClusterConfig:
    min_cluster_size: int = 2
    # None = one bucket per calendar day in the graph's reference timezone
    temporal_window: Optional[timedelta] = None
    temporal_medium_count: int = 5
    temporal_high_count: int = 10
    value_threshold: float = 0.1
    structuring_medium_count: int = 3
    structuring_high_count: int = 5
    max_cycle_length: int = 6
    max_cycles: int = 1000
    high_value_threshold: float = 1000.0
    exchange_labels: FrozenSet[str] = frozenset({"exchange"})


class PatternDetector(Protocol):
    """Optional extra detector (e.g. a trained model) consulted after the rule passes."""

    name: str

    def detect(self, graph: TransactionGraph) -> Iterable[Cluster]:
        ...


def _count_level(count: int, medium: int, high: int) -> str:
    if count >= high:
        return "high"
    if count >= medium:
        return "medium"
    return "low"


def temporal_clusters(graph: TransactionGraph, cfg: ClusterConfig) -> List[Cluster]:
    edges = graph.edges
    if not edges:
        return []

    frame = pd.DataFrame(
        {
            "idx": range(len(edges)),
            "timestamp": pd.to_datetime([e.timestamp for e in edges], utc=True),
        }
    )

    groups: List[Tuple[str, List[int]]] = []
    if cfg.temporal_window is None:
        frame["bucket"] = frame["timestamp"].dt.tz_convert(graph.reference_tz).dt.strftime("%Y-%m-%d")
        for bucket, g in frame.groupby("bucket", sort=True):
            groups.append((f"on {bucket}", g["idx"].tolist()))
    else:
        frame = frame.sort_values(["timestamp", "idx"], kind="mergesort")
        anchor = None
        current: List[int] = []
        for row in frame.itertuples(index=False):
            if anchor is not None and row.timestamp - anchor > cfg.temporal_window:
                groups.append((f"from {anchor.isoformat()}", current))
                current = []
                anchor = None
            if anchor is None:
                anchor = row.timestamp
            current.append(int(row.idx))
        if current:
            groups.append((f"from {anchor.isoformat()}", current))

    clusters = []
    for label, idxs in groups:
        members = [edges[i] for i in sorted(idxs)]
        level = _count_level(len(members), cfg.temporal_medium_count, cfg.temporal_high_count)
        clusters.append(
            make_cluster(
                TEMPORAL,
                f"Rapid succession {label}",
                f"{len(members)} transfers within the same time window {label}",
                members,
                level,
                key=label,
            )
        )
    return clusters


def value_similarity_clusters(graph: TransactionGraph, cfg: ClusterConfig) -> List[Cluster]:
    """Near-identical amounts: every pair in a group differs by < value_threshold of the larger."""
    edges = graph.edges
    if len(edges) < 2:
        return []

    order = sorted(range(len(edges)), key=lambda i: (edges[i].value, i))
    groups: List[List[int]] = []
    current = [order[0]]
    base = edges[order[0]].value
    for i in order[1:]:
        v = edges[i].value
        if (v - base) / v < cfg.value_threshold:
            current.append(i)
        else:
            groups.append(current)
            current = [i]
            base = v
    groups.append(current)

    clusters = []
    for idxs in groups:
        if len(idxs) < 2:
            continue
        members = [edges[i] for i in sorted(idxs)]
        low = min(e.value for e in members)
        high = max(e.value for e in members)
        level = _count_level(len(members), cfg.structuring_medium_count, cfg.structuring_high_count)
        clusters.append(
            make_cluster(
                VALUE_SIMILARITY,
                f"Similar amounts {low:g}-{high:g}",
                f"{len(members)} transfers of near-identical value, consistent with structuring",
                members,
                level,
            )
        )
    return clusters


def circular_flow_clusters(graph: TransactionGraph, cfg: ClusterConfig) -> List[Cluster]:
    """
    Directed cycles up to max_cycle_length hops. Cycles over the same wallet
    set collapse into one cluster carrying the transfers of all of them.
    """
    flow = graph.flow_graph
    pairs_by_set: Dict[FrozenSet[str], Set[Tuple[str, str]]] = {}
    hops_by_set: Dict[FrozenSet[str], int] = {}

    found = 0
    for cycle in nx.simple_cycles(flow, length_bound=cfg.max_cycle_length):
        found += 1
        if found > cfg.max_cycles:
            logger.warning(
                "Cycle enumeration stopped after %d cycles (max_cycle_length=%d)",
                cfg.max_cycles,
                cfg.max_cycle_length,
            )
            break
        if len(cycle) < 2:
            continue
        key = frozenset(cycle)
        pairs = pairs_by_set.setdefault(key, set())
        for i, u in enumerate(cycle):
            pairs.add((u, cycle[(i + 1) % len(cycle)]))
        hops_by_set[key] = min(hops_by_set.get(key, len(cycle)), len(cycle))

    clusters = []
    for key, pairs in pairs_by_set.items():
        members = [e for e in graph.edges if (e.source, e.target) in pairs]
        clusters.append(
            make_cluster(
                CIRCULAR_FLOW,
                f"Circular flow across {len(key)} wallets",
                f"Funds return to their origin in {hops_by_set[key]} hops",
                members,
                "high",
                key=",".join(sorted(key)),
            )
        )
    return clusters


def exchange_clusters(graph: TransactionGraph, cfg: ClusterConfig) -> List[Cluster]:
    exchanges: Dict[str, Set[str]] = defaultdict(set)
    for address, node in graph.nodes.items():
        for label in node.labels:
            kind, _, named = label.partition(":")
            if kind.strip().lower() in cfg.exchange_labels:
                exchanges[named.strip() or address].add(address)

    clusters = []
    for exchange in sorted(exchanges):
        wallets = exchanges[exchange]
        members = [e for e in graph.edges if e.source in wallets or e.target in wallets]
        if not members:
            continue
        total = sum(e.value for e in members)
        level = "medium" if total > cfg.high_value_threshold else "low"
        clusters.append(
            make_cluster(
                EXCHANGE_INTERACTION,
                f"Exchange interactions: {exchange}",
                f"{len(members)} transfers with {exchange}",
                members,
                level,
                key=exchange,
            )
        )
    return clusters


def _checked_plugin_cluster(detector_name: str, cluster: Cluster) -> Optional[Cluster]:
    """Hold plugin output to the rule-pass invariants; drop it when it cannot be repaired."""
    endpoints = {w for e in cluster.transactions for w in (e.source, e.target)}
    if not cluster.wallet_addresses <= endpoints:
        logger.warning(
            "Dropping cluster %s from %s: wallets %s are not endpoints of its transfers",
            cluster.id,
            detector_name,
            sorted(cluster.wallet_addresses - endpoints),
        )
        return None
    if cluster.risk_level not in RISK_ORDER:
        logger.warning(
            "Dropping cluster %s from %s: unknown risk level %r", cluster.id, detector_name, cluster.risk_level
        )
        return None
    if cluster.pattern_type == CIRCULAR_FLOW and cluster.risk_level != "high":
        logger.warning(
            "Raising circular-flow cluster %s from %s to high (was %s)", cluster.id, detector_name, cluster.risk_level
        )
        return dataclasses.replace(cluster, risk_level="high")
    return cluster


PASSES = {
    TEMPORAL: temporal_clusters,
    VALUE_SIMILARITY: value_similarity_clusters,
    CIRCULAR_FLOW: circular_flow_clusters,
    EXCHANGE_INTERACTION: exchange_clusters,
}


class ClusterDetector:
    def __init__(
        self,
        cfg: ClusterConfig = ClusterConfig(),
        pattern_detectors: Sequence[PatternDetector] = (),
    ):
        self.cfg = cfg
        self.pattern_detectors = tuple(pattern_detectors)

    def detect_clusters(
        self,
        graph: TransactionGraph,
        passes: Optional[Iterable[str]] = None,
        cfg: Optional[ClusterConfig] = None,
    ) -> List[Cluster]:
        cfg = cfg or self.cfg
        selected = list(PATTERN_TYPES) if passes is None else list(dict.fromkeys(passes))
        unknown = [p for p in selected if p not in PASSES]
        if unknown:
            raise ValueError(f"unknown detection pass(es): {unknown}")

        clusters: List[Cluster] = []
        for name in selected:
            clusters.extend(PASSES[name](graph, cfg))

        for detector in self.pattern_detectors:
            try:
                extra = list(detector.detect(graph))
            except Exception:
                logger.exception("Pattern detector %s failed; keeping rule-based clusters", detector.name)
                continue
            for cluster in extra:
                if cluster.pattern_type not in selected:
                    continue
                checked = _checked_plugin_cluster(detector.name, cluster)
                if checked is not None:
                    clusters.append(checked)

        kept = [c for c in clusters if len(c.wallet_addresses) >= cfg.min_cluster_size]
        kept.sort(key=lambda c: (RISK_ORDER[c.risk_level], -c.total_value, c.id))
        logger.debug("Detected %d clusters (%d below minimum size)", len(kept), len(clusters) - len(kept))
        return kept
