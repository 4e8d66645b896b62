from __future__ import annotations

import hashlib
import logging
import math
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import networkx as nx

logger = logging.getLogger(__name__)

BEHAVIOR_CATALOGUE: Dict[str, Tuple[str, ...]] = {
    "exchange": (
        "Regular large deposits and withdrawals",
        "High transaction volume during market hours",
        "Multiple token types handled",
        "Consistent hot/cold wallet transfers",
        "Batch processing of transactions",
    ),
    "individual": (
        "Irregular transaction timing",
        "Varied transaction amounts",
        "Limited counterparties",
        "Preference for specific tokens",
        "Weekend activity spikes",
    ),
    "contract": (
        "Automated transaction patterns",
        "Consistent gas usage",
        "Regular interaction with specific contracts",
        "Predictable timing patterns",
        "Similar transaction amounts",
    ),
    "mixer": (
        "Multiple small output transactions",
        "Delayed withdrawals",
        "Privacy token usage",
        "Irregular timing patterns",
        "Connection to known privacy tools",
    ),
    "scam": (
        "Rapid fund consolidation",
        "Short-lived wallet activity",
        "Connections to reported scam addresses",
        "Unusual token swapping patterns",
        "Quick distribution to multiple wallets",
    ),
    "other": (
        "Mixed transaction patterns",
        "Varied counterparties",
        "Inconsistent activity periods",
        "Multiple token types",
        "Varied transaction sizes",
    ),
}

HIGH_RISK_CATEGORIES = frozenset({"mixer", "scam"})
MEDIUM_RISK_CATEGORIES = frozenset({"contract"})


@dataclass(frozen=True)
class Entity:
    id: str
    category: str
    counterparties: FrozenSet[str] = field(default_factory=frozenset)
    transaction_count: int = 0
    name: Optional[str] = None
    risk_score: Optional[float] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("entity id is required")
        if self.transaction_count < 0:
            raise ValueError(f"entity {self.id}: transaction_count must be >= 0")
        object.__setattr__(self, "category", (self.category or "other").strip().lower())
        object.__setattr__(self, "counterparties", frozenset(self.counterparties))


@dataclass(frozen=True)
class EntityCluster:
    id: str
    name: str
    member_entities: Tuple[Entity, ...]
    dominant_category: str
    similarity_score: float
    behavior_patterns: Tuple[str, ...]
    risk_level: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "entities": [e.id for e in self.member_entities],
            "entityCount": len(self.member_entities),
            "dominantCategory": self.dominant_category,
            "similarityScore": self.similarity_score,
            "behaviorPatterns": list(self.behavior_patterns),
            "riskLevel": self.risk_level,
        }


@dataclass(frozen=True)
class SimilarityWeights:
    counterparties: float = 0.5
    activity: float = 0.3
    category: float = 0.2


def activity_bucket(transaction_count: int) -> int:
    return int(math.floor(math.log10(transaction_count + 1)))


def jaccard(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def similarity(a: Entity, b: Entity, weights: SimilarityWeights = SimilarityWeights()) -> float:
    """Symmetric score in [0, 1]; identical entities with shared counterparties score 1."""
    delta = abs(activity_bucket(a.transaction_count) - activity_bucket(b.transaction_count))
    score = (
        weights.counterparties * jaccard(a.counterparties, b.counterparties)
        + weights.activity * (1.0 / (1.0 + delta))
        + weights.category * (1.0 if a.category == b.category else 0.0)
    )
    return max(0.0, min(1.0, score))


def dominant_category(members: Sequence[Entity]) -> str:
    counts: Dict[str, int] = {}
    for e in members:
        counts[e.category] = counts.get(e.category, 0) + 1
    best = max(counts.values())
    # dicts keep insertion order, so ties go to the category seen first
    return next(c for c, n in counts.items() if n == best)


def risk_level_for(category: str, members: Sequence[Entity]) -> str:
    scores = [e.risk_score or 0.0 for e in members]
    if category in HIGH_RISK_CATEGORIES or any(s > 75 for s in scores):
        return "high"
    if category in MEDIUM_RISK_CATEGORIES or any(s > 50 for s in scores):
        return "medium"
    return "low"


def behavior_patterns(category: str, members: Sequence[Entity]) -> Tuple[str, ...]:
    patterns = list(BEHAVIOR_CATALOGUE.get(category, BEHAVIOR_CATALOGUE["other"]))

    if len(members) > 1:
        shared = frozenset.intersection(*(e.counterparties for e in members))
        if shared:
            patterns.append(f"{len(shared)} counterparties shared by every member")
        if len({e.category for e in members}) > 1:
            patterns.append("Members span multiple categories")
    if members and min(e.transaction_count for e in members) >= 1000:
        patterns.append("Sustained high transaction volume")
    return tuple(patterns)


class EntityClusterer:
    """
    Single-linkage grouping of labelled entities.

    Two entities link when their similarity exceeds min_similarity; clusters
    are the connected components of that link graph, so the result does not
    depend on input order.
    """

    def __init__(
        self,
        min_similarity: float = 0.6,
        weights: SimilarityWeights = SimilarityWeights(),
    ):
        if not 0.0 <= min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be within [0, 1], got {min_similarity}")
        self.min_similarity = min_similarity
        self.weights = weights

    def cluster_entities(self, entities: Iterable[Entity]) -> List[EntityCluster]:
        entities = list(entities)
        ids = [e.id for e in entities]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate entity ids: {duplicates}")

        by_id = {e.id: e for e in entities}
        G = nx.Graph()
        G.add_nodes_from(ids)
        for a, b in combinations(entities, 2):
            s = similarity(a, b, self.weights)
            if s > self.min_similarity:
                G.add_edge(a.id, b.id, similarity=s)

        position = {eid: i for i, eid in enumerate(ids)}
        clusters = []
        for component in nx.connected_components(G):
            members = tuple(by_id[eid] for eid in sorted(component, key=position.__getitem__))
            clusters.append(self._build(members))

        clusters.sort(key=lambda c: (-len(c.member_entities), c.id))
        logger.debug("Grouped %d entities into %d clusters", len(entities), len(clusters))
        return clusters

    def _build(self, members: Tuple[Entity, ...]) -> EntityCluster:
        if len(members) == 1:
            score = 1.0
        else:
            score = min(similarity(a, b, self.weights) for a, b in combinations(members, 2))

        category = dominant_category(members)
        categories = list(dict.fromkeys(e.category for e in members))
        if len(categories) == 1:
            name = f"{category.capitalize()} Group"
        else:
            name = f"Mixed Group ({'/'.join(categories)})"

        digest = hashlib.sha256("|".join(sorted(e.id for e in members)).encode()).hexdigest()
        return EntityCluster(
            id=f"entity-cluster-{digest[:16]}",
            name=name,
            member_entities=members,
            dominant_category=category,
            similarity_score=score,
            behavior_patterns=behavior_patterns(category, members),
            risk_level=risk_level_for(category, members),
        )
