from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

from services.errors import InvariantViolation
from services.graph.models import TransactionGraph
from services.scoring.factors import (
    FactorResult,
    RiskConfig,
    RiskFactor,
    TransactionFactor,
    WalletFactor,
    default_transaction_factors,
    default_wallet_factors,
)

logger = logging.getLogger(__name__)

# Public contract: downstream consumers depend on these cut-offs.
HIGH_THRESHOLD = 70
MEDIUM_THRESHOLD = 40


def level_for(value: int) -> str:
    if value >= HIGH_THRESHOLD:
        return "high"
    if value >= MEDIUM_THRESHOLD:
        return "medium"
    return "low"


@dataclass(frozen=True)
class RiskScore:
    subject: str
    value: int
    level: str
    factors: Tuple[RiskFactor, ...]


@dataclass(frozen=True)
class TransactionRiskScore:
    tx_id: str
    value: int
    level: str
    factors: Tuple[RiskFactor, ...]


def aggregate(evaluated: Iterable[Tuple[Any, FactorResult]]) -> Tuple[int, Tuple[RiskFactor, ...]]:
    """
    Weighted mean of the applicable factor impacts, clamped to 0-100.

    fsum keeps the total independent of factor registration order.
    """
    factors: List[RiskFactor] = []
    for factor, result in evaluated:
        if not result.applicable:
            continue
        if not 0 <= result.impact <= 100:
            raise InvariantViolation(f"factor {factor.name} returned impact {result.impact}")
        factors.append(
            RiskFactor(
                name=factor.name,
                description=result.description,
                impact=int(result.impact),
                weight=float(factor.weight),
                details=tuple(result.details),
            )
        )

    total_weight = math.fsum(f.weight for f in factors)
    if not factors or total_weight <= 0:
        value = 0
    else:
        raw = math.fsum(f.impact * f.weight for f in factors) / total_weight
        value = int(max(0, min(100, round(raw))))

    ordered = tuple(sorted(factors, key=lambda f: (-f.impact, f.name)))
    return value, ordered


class RiskScoringEngine:
    """
    Scores wallets and single transfers from an explicit factor registry.

    The engine never mutates the graph and holds no per-request state, so one
    instance can serve concurrent requests.
    """

    def __init__(
        self,
        cfg: RiskConfig = RiskConfig(),
        factors: Optional[Sequence[WalletFactor]] = None,
        transaction_factors: Optional[Sequence[TransactionFactor]] = None,
    ):
        self.cfg = cfg
        self.factors = tuple(factors if factors is not None else default_wallet_factors(cfg))
        self.transaction_factors = tuple(
            transaction_factors
            if transaction_factors is not None
            else default_transaction_factors(cfg)
        )

    def score(self, graph: TransactionGraph, subject: str) -> RiskScore:
        if subject not in graph:
            raise InvariantViolation(f"subject {subject} is not part of the analysed graph")

        value, factors = aggregate((f, f.evaluate(graph, subject)) for f in self.factors)
        return RiskScore(subject=subject, value=value, level=level_for(value), factors=factors)

    def score_transaction(self, graph: TransactionGraph, tx_id: str) -> TransactionRiskScore:
        edge = graph.find_edge(tx_id)
        if edge is None:
            raise LookupError(f"transaction {tx_id} not found in graph")

        value, factors = aggregate((f, f.evaluate(graph, edge)) for f in self.transaction_factors)
        return TransactionRiskScore(tx_id=tx_id, value=value, level=level_for(value), factors=factors)

    def explain(self, graph: TransactionGraph, subject: str) -> Dict[str, Any]:
        """
        Explain a score with:
          - each applicable factor's share of the weighted mean
          - factors that abstained and why
        """
        if subject not in graph:
            raise InvariantViolation(f"subject {subject} is not part of the analysed graph")

        evaluated = [(f, f.evaluate(graph, subject)) for f in self.factors]
        value, factors = aggregate(evaluated)
        total_weight = math.fsum(f.weight for f in factors)

        breakdown = [
            {
                "name": f.name,
                "impact": f.impact,
                "weight": f.weight,
                "contribution": round(f.impact * f.weight / total_weight, 6) if total_weight else 0.0,
                "description": f.description,
                "details": list(f.details),
            }
            for f in factors
        ]
        abstained = [
            {"name": f.name, "reason": r.description} for f, r in evaluated if not r.applicable
        ]

        node = graph.node(subject)
        return {
            "wallet": subject,
            "risk_score": value,
            "risk_level": level_for(value),
            "in_degree": len(graph.in_edges(subject)),
            "out_degree": len(graph.out_edges(subject)),
            "synthetic": node.synthetic,
            "factor_breakdown": breakdown,
            "abstained": abstained,
        }


def score_top_wallets(
    graph: TransactionGraph, engine: RiskScoringEngine, top_n: int = 20
) -> pd.DataFrame:
    rows: List[Dict] = []
    for w in graph.nodes:
        r = engine.score(graph, w)
        rows.append({"wallet": r.subject, "risk_score": r.value, "risk_level": r.level})
    if not rows:
        return pd.DataFrame(columns=["wallet", "risk_score", "risk_level"])
    df = pd.DataFrame(rows).sort_values(["risk_score", "wallet"], ascending=[False, True]).head(top_n)
    return df.reset_index(drop=True)


def summarize_scores(scores: Sequence[RiskScore]) -> Dict[str, Any]:
    """Portfolio view over many scores: mean value and factor counts by impact band."""
    impacts = [f.impact for s in scores for f in s.factors]
    levels = [s.level for s in scores]
    return {
        "wallets": len(scores),
        "mean_score": round(math.fsum(s.value for s in scores) / len(scores), 2) if scores else 0.0,
        "levels": {lvl: levels.count(lvl) for lvl in ("high", "medium", "low")},
        "high_impact_factors": sum(1 for i in impacts if i >= HIGH_THRESHOLD),
        "medium_impact_factors": sum(1 for i in impacts if MEDIUM_THRESHOLD <= i < HIGH_THRESHOLD),
        "low_impact_factors": sum(1 for i in impacts if i < MEDIUM_THRESHOLD),
    }
