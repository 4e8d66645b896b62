"""
Risk factors.

Each factor inspects the graph around a subject (a wallet, or one transfer for
the transaction factors) and returns a FactorResult: an impact in [0, 100], a
human-readable description, and whether it applies at all. A factor that does
not apply abstains; it is left out of aggregation instead of counting as zero.

Factors are pure: no I/O, no clock, no hidden state. Everything time-based is
measured against graph.as_of.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, FrozenSet, List, Optional, Protocol, Tuple

import networkx as nx

from services.graph.models import TransactionGraph, TransferEdge, WalletNode

SECONDS_PER_DAY = 86400.0

# Known high-risk entity kinds (label prefix before an optional ":<name>")
HIGH_RISK_LABELS: FrozenSet[str] = frozenset(
    {
        "mixer",
        "darknet_market",
        "scam",
        "ransomware",
        "sanctioned",
        "high_risk_exchange",
        "gambling",
        "phishing",
        "ponzi_scheme",
    }
)

PRIVACY_TOOLS: FrozenSet[str] = frozenset(
    {
        "mixer",
        "tornado_cash",
        "wasabi_wallet",
        "samourai_wallet",
        "coinjoin",
        "solana_mixer",
        "monero_bridge",
        "zcash_bridge",
    }
)


@dataclass(frozen=True)
class FactorResult:
    impact: int
    description: str
    applicable: bool = True
    details: Tuple[str, ...] = ()

    @classmethod
    def abstain(cls, reason: str) -> "FactorResult":
        return cls(impact=0, description=reason, applicable=False)


@dataclass(frozen=True)
class RiskFactor:
    name: str
    description: str
    impact: int
    weight: float
    details: Tuple[str, ...] = ()


class WalletFactor(Protocol):
    name: str
    weight: float

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        ...


class TransactionFactor(Protocol):
    name: str
    weight: float

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        ...


def clamp_impact(x: float) -> int:
    if math.isnan(x):
        return 0
    return int(max(0, min(100, round(x))))


def label_kinds(node: WalletNode) -> FrozenSet[str]:
    """`mixer:foo` -> `mixer`; labels are compared case-insensitively."""
    return frozenset(label.split(":", 1)[0].strip().lower() for label in node.labels)


def is_high_risk(node: WalletNode, labels: FrozenSet[str] = HIGH_RISK_LABELS) -> bool:
    return node.risk_level == "high" or bool(label_kinds(node) & labels)


def _first_activity(graph: TransactionGraph, subject: str) -> Optional[datetime]:
    node = graph.node(subject)
    if node.first_activity is not None:
        return node.first_activity
    stamps = [e.timestamp for e in graph.edges_of(subject)]
    return min(stamps) if stamps else None


def _is_round(value: float, tolerance: float, min_value: float) -> bool:
    return value >= min_value and abs(value - round(value)) < tolerance


def _in_hours(graph: TransactionGraph, edge: TransferEdge, start: int, end: int) -> bool:
    hour = graph.local_time(edge.timestamp).hour
    return start <= hour <= end


# --- wallet factors -----------------------------------------------------------


@dataclass(frozen=True)
class HighRiskConnectionFactor:
    """Exposure to flagged wallets, weighted by hop distance (0-hop = the wallet itself)."""

    name: ClassVar[str] = "High-risk connections"
    weight: float = 20.0
    hop_weights: Tuple[float, ...] = (1.0, 0.8, 0.4)
    impact_per_exposure: float = 75.0
    labels: FrozenSet[str] = HIGH_RISK_LABELS
    sample_limit: int = 5

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        layers = graph.k_hop_layers(subject, len(self.hop_weights) - 1)
        subject_flagged = is_high_risk(graph.node(subject), self.labels)
        has_neighbors = len(layers) > 1 and bool(layers[1])
        if not has_neighbors and not subject_flagged:
            return FactorResult.abstain("No counterparties to assess")

        exposure = 0.0
        flagged: List[str] = []
        for hop, w in enumerate(self.hop_weights):
            layer = layers[hop] if hop < len(layers) else set()
            hits = sorted(a for a in layer if is_high_risk(graph.node(a), self.labels))
            exposure += w * len(hits)
            flagged.extend(hits)

        if not flagged:
            return FactorResult(0, "No high-risk wallets within reach")

        return FactorResult(
            clamp_impact(exposure * self.impact_per_exposure),
            f"{len(flagged)} high-risk wallet(s) within {len(self.hop_weights) - 1} hops",
            details=tuple(flagged[: self.sample_limit]),
        )


@dataclass(frozen=True)
class TransactionVelocityFactor:
    name: ClassVar[str] = "Transaction velocity"
    weight: float = 15.0
    threshold_per_day: float = 10.0

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        node = graph.node(subject)
        count = node.transaction_count or len(graph.edges_of(subject))
        first = _first_activity(graph, subject)
        if count == 0 or first is None or graph.as_of is None:
            return FactorResult.abstain("No activity to measure velocity")

        days = max(1.0, (graph.as_of - first).total_seconds() / SECONDS_PER_DAY)
        rate = count / days
        if rate < self.threshold_per_day / 2:
            return FactorResult(0, f"{rate:.1f} transactions/day")

        return FactorResult(
            clamp_impact(50.0 * rate / self.threshold_per_day),
            f"{rate:.1f} transactions/day against a threshold of {self.threshold_per_day:g}",
        )


@dataclass(frozen=True)
class WalletAgeFactor:
    """New wallets add risk, long-lived wallets subtract from a neutral baseline."""

    name: ClassVar[str] = "Wallet age"
    weight: float = 5.0
    new_wallet_days: float = 7.0
    old_wallet_days: float = 365.0
    baseline: float = 30.0
    new_wallet_bonus: float = 60.0
    old_wallet_discount: float = 30.0

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        first = _first_activity(graph, subject)
        if first is None or graph.as_of is None:
            return FactorResult.abstain("Wallet age unknown")

        age = max(0.0, (graph.as_of - first).total_seconds() / SECONDS_PER_DAY)
        if age < self.new_wallet_days:
            impact = self.baseline + self.new_wallet_bonus * (1 - age / self.new_wallet_days)
            desc = f"New wallet: first seen {age:.1f} days ago"
        elif age > self.old_wallet_days:
            excess = min(1.0, (age - self.old_wallet_days) / self.old_wallet_days)
            impact = self.baseline - self.old_wallet_discount * excess
            desc = f"Established wallet: first seen {age:.0f} days ago"
        else:
            impact = self.baseline
            desc = f"Wallet first seen {age:.0f} days ago"

        return FactorResult(clamp_impact(impact), desc)


@dataclass(frozen=True)
class RoundNumberFactor:
    name: ClassVar[str] = "Round-number transfers"
    weight: float = 15.0
    tolerance: float = 0.001
    min_value: float = 1.0

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        edges = graph.edges_of(subject)
        if not edges:
            return FactorResult.abstain("No transfers")

        round_ids = [e.id for e in edges if _is_round(e.value, self.tolerance, self.min_value)]
        return FactorResult(
            clamp_impact(100.0 * len(round_ids) / len(edges)),
            f"{len(round_ids)} of {len(edges)} transfers are round amounts",
            details=tuple(round_ids[:5]),
        )


@dataclass(frozen=True)
class CounterpartyDiversityFactor:
    """Many distinct counterparties relative to transfer count suggests mixing."""

    name: ClassVar[str] = "Counterparty diversity"
    weight: float = 25.0
    min_transfers: int = 5
    baseline_ratio: float = 0.5

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        edges = graph.edges_of(subject)
        if len(edges) < self.min_transfers:
            return FactorResult.abstain(f"Fewer than {self.min_transfers} transfers")

        counterparties = {e.target if e.source == subject else e.source for e in edges}
        counterparties.discard(subject)
        ratio = len(counterparties) / len(edges)
        impact = 0.0
        if ratio > self.baseline_ratio:
            impact = 100.0 * (ratio - self.baseline_ratio) / (1.0 - self.baseline_ratio)

        return FactorResult(
            clamp_impact(impact),
            f"{len(counterparties)} unique counterparties across {len(edges)} transfers",
        )


@dataclass(frozen=True)
class CircularFlowFactor:
    name: ClassVar[str] = "Circular flows"
    weight: float = 15.0
    max_cycle_length: int = 6
    impact_per_cycle: float = 40.0
    # enough to saturate the impact; bounds enumeration on dense graphs
    max_cycles: int = 10

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        flow = graph.flow_graph
        if flow.degree(subject) == 0:
            return FactorResult.abstain("No transfers")

        component = next(c for c in nx.strongly_connected_components(flow) if subject in c)
        if len(component) < 2:
            return FactorResult(0, "No circular flows through this wallet")

        cycles = []
        for cycle in nx.simple_cycles(flow.subgraph(component), length_bound=self.max_cycle_length):
            if len(cycle) >= 2 and subject in cycle:
                cycles.append(cycle)
                if len(cycles) >= self.max_cycles:
                    break

        if not cycles:
            return FactorResult(0, "No circular flows through this wallet")

        shortest = min(len(c) for c in cycles)
        return FactorResult(
            clamp_impact(self.impact_per_cycle * len(cycles)),
            f"Funds return to this wallet through {len(cycles)} cycle(s), shortest {shortest} hops",
        )


@dataclass(frozen=True)
class UnusualTimingFactor:
    name: ClassVar[str] = "Unusual timing"
    weight: float = 10.0
    start_hour: int = 1
    end_hour: int = 5

    def evaluate(self, graph: TransactionGraph, subject: str) -> FactorResult:
        edges = graph.edges_of(subject)
        if not edges:
            return FactorResult.abstain("No transfers")

        odd = [e for e in edges if _in_hours(graph, e, self.start_hour, self.end_hour)]
        return FactorResult(
            clamp_impact(100.0 * len(odd) / len(edges)),
            f"{len(odd)} of {len(edges)} transfers between "
            f"{self.start_hour:02d}:00 and {self.end_hour:02d}:59 ({graph.reference_tz})",
        )


# --- transaction factors ------------------------------------------------------


@dataclass(frozen=True)
class LargeAmountFactor:
    name: ClassVar[str] = "Large amount"
    weight: float = 20.0
    tiers: Tuple[Tuple[float, int], ...] = ((1000.0, 100), (500.0, 75), (100.0, 50), (50.0, 25))

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        for floor, impact in self.tiers:
            if edge.value > floor:
                return FactorResult(impact, f"Amount {edge.value:g} {edge.token} exceeds {floor:g}")
        return FactorResult(0, f"Amount {edge.value:g} {edge.token}")


@dataclass(frozen=True)
class UnusualHourFactor:
    name: ClassVar[str] = "Unusual hour"
    weight: float = 10.0
    start_hour: int = 1
    end_hour: int = 5

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        local = graph.local_time(edge.timestamp)
        if _in_hours(graph, edge, self.start_hour, self.end_hour):
            return FactorResult(100, f"Sent at {local:%H:%M} ({graph.reference_tz})")
        return FactorResult(0, f"Sent at {local:%H:%M} ({graph.reference_tz})")


@dataclass(frozen=True)
class RoundAmountFactor:
    name: ClassVar[str] = "Round amount"
    weight: float = 15.0
    tolerance: float = 0.001
    min_value: float = 1.0

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        if _is_round(edge.value, self.tolerance, self.min_value):
            return FactorResult(100, "Amount is a whole number")
        if _is_round(edge.value * 10, self.tolerance * 10, self.min_value * 10):
            return FactorResult(50, "Amount has a single decimal place")
        return FactorResult(0, "Amount is not round")


@dataclass(frozen=True)
class PrivacyToolFactor:
    name: ClassVar[str] = "Privacy tool"
    weight: float = 15.0
    tools: FrozenSet[str] = PRIVACY_TOOLS

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        for address in (edge.source, edge.target):
            hits = sorted(label_kinds(graph.node(address)) & self.tools)
            if hits:
                return FactorResult(
                    100,
                    f"Transfer involves a known privacy tool: {hits[0]}",
                    details=(address,),
                )
        return FactorResult(0, "No privacy tools involved")


@dataclass(frozen=True)
class MultiHopFactor:
    """Length of the onward chain the funds travel from the sender."""

    name: ClassVar[str] = "Multi-hop chain"
    weight: float = 15.0
    max_hops: int = 6
    impact_per_hop: float = 20.0

    def evaluate(self, graph: TransactionGraph, edge: TransferEdge) -> FactorResult:
        distances = nx.single_source_shortest_path_length(
            graph.flow_graph, edge.source, cutoff=self.max_hops
        )
        hops = max(distances.values(), default=0)
        if hops <= 1:
            return FactorResult(0, "Direct transfer")
        return FactorResult(
            clamp_impact(self.impact_per_hop * hops),
            f"Part of a {hops}-hop transfer chain",
        )


@dataclass(frozen=True)
class RiskConfig:
    # how much weight to give to exposure at each hop (0-hop = the wallet itself)
    hop_weights: Tuple[float, ...] = (1.0, 0.8, 0.4)
    velocity_threshold_per_day: float = 10.0
    new_wallet_days: float = 7.0
    old_wallet_days: float = 365.0
    round_tolerance: float = 0.001
    diversity_min_transfers: int = 5
    max_cycle_length: int = 6
    unusual_hours: Tuple[int, int] = (1, 5)


def default_wallet_factors(cfg: RiskConfig = RiskConfig()) -> List[WalletFactor]:
    start, end = cfg.unusual_hours
    return [
        HighRiskConnectionFactor(hop_weights=cfg.hop_weights),
        TransactionVelocityFactor(threshold_per_day=cfg.velocity_threshold_per_day),
        WalletAgeFactor(new_wallet_days=cfg.new_wallet_days, old_wallet_days=cfg.old_wallet_days),
        RoundNumberFactor(tolerance=cfg.round_tolerance),
        CounterpartyDiversityFactor(min_transfers=cfg.diversity_min_transfers),
        CircularFlowFactor(max_cycle_length=cfg.max_cycle_length),
        UnusualTimingFactor(start_hour=start, end_hour=end),
    ]


def default_transaction_factors(cfg: RiskConfig = RiskConfig()) -> List[TransactionFactor]:
    start, end = cfg.unusual_hours
    return [
        LargeAmountFactor(),
        UnusualHourFactor(start_hour=start, end_hour=end),
        RoundAmountFactor(tolerance=cfg.round_tolerance),
        PrivacyToolFactor(),
        MultiHopFactor(max_hops=cfg.max_cycle_length),
    ]

