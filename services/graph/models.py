from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import networkx as nx

from services.errors import InvariantViolation

NATIVE_TOKEN = "SOL"
RISK_LEVELS = ("low", "medium", "high")


def _as_utc(ts: datetime) -> datetime:
    # naive timestamps are treated as UTC, the way the upstream feeds emit them
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class WalletNode:
    address: str
    balance: float = 0.0
    transaction_count: int = 0
    first_activity: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    labels: FrozenSet[str] = field(default_factory=frozenset)
    synthetic: bool = False
    # level assigned by a previous scoring run, supplied by the data collaborator
    risk_level: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", frozenset(self.labels))
        if self.first_activity is not None:
            object.__setattr__(self, "first_activity", _as_utc(self.first_activity))
        if self.last_activity is not None:
            object.__setattr__(self, "last_activity", _as_utc(self.last_activity))

        if self.balance < 0:
            raise InvariantViolation(f"wallet {self.address} has negative balance {self.balance}")
        if self.transaction_count < 0:
            raise InvariantViolation(
                f"wallet {self.address} has negative transaction count {self.transaction_count}"
            )
        if (
            self.first_activity is not None
            and self.last_activity is not None
            and self.first_activity > self.last_activity
        ):
            raise InvariantViolation(f"wallet {self.address} has first_activity after last_activity")
        if self.risk_level is not None and self.risk_level not in RISK_LEVELS:
            raise InvariantViolation(f"wallet {self.address} has unknown risk level {self.risk_level!r}")


@dataclass(frozen=True)
class TransferEdge:
    source: str
    target: str
    value: float
    timestamp: datetime
    token: str = NATIVE_TOKEN
    tx_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))
        if not self.value > 0:
            raise InvariantViolation(
                f"transfer {self.source}->{self.target} has non-positive value {self.value}"
            )

    @property
    def id(self) -> str:
        if self.tx_id:
            return self.tx_id
        return f"{self.source}:{self.target}:{self.timestamp.isoformat()}:{self.value!r}"

    @property
    def key(self) -> Tuple[str, str, float, str, str]:
        return (self.source, self.target, self.value, self.timestamp.isoformat(), self.token)


class TransactionGraph:
    """
    Wallets (nodes) and transfers (edges) around one analysed address.

    A graph is an immutable snapshot owned by a single request. Parallel edges
    between the same pair are distinct transfers and are kept as such.
    """

    def __init__(
        self,
        nodes: Union[Mapping[str, WalletNode], Iterable[WalletNode]],
        edges: Iterable[TransferEdge] = (),
        reference_tz: str = "UTC",
        as_of: Optional[datetime] = None,
    ):
        if isinstance(nodes, Mapping):
            node_map: Dict[str, WalletNode] = dict(nodes)
        else:
            node_map = {n.address: n for n in nodes}

        for address, node in node_map.items():
            if node.address != address:
                raise InvariantViolation(f"node keyed as {address} carries address {node.address}")

        edge_tuple = tuple(edges)
        out_index: Dict[str, List[int]] = {a: [] for a in node_map}
        in_index: Dict[str, List[int]] = {a: [] for a in node_map}
        for i, e in enumerate(edge_tuple):
            for endpoint in (e.source, e.target):
                if endpoint not in node_map:
                    raise InvariantViolation(
                        f"dangling transfer {e.id}: endpoint {endpoint} has no wallet node"
                    )
            out_index[e.source].append(i)
            in_index[e.target].append(i)

        try:
            self._tz = ZoneInfo(reference_tz)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown reference timezone {reference_tz!r}") from exc

        self._nodes = MappingProxyType(node_map)
        self._edges = edge_tuple
        self._out = out_index
        self._in = in_index
        self.reference_tz = reference_tz
        self._as_of = _as_utc(as_of) if as_of is not None else self._latest_activity()

    @classmethod
    def from_transfers(
        cls,
        transfers: Iterable[TransferEdge],
        wallets: Union[Mapping[str, WalletNode], Iterable[WalletNode]] = (),
        include: Iterable[str] = (),
        reference_tz: str = "UTC",
        as_of: Optional[datetime] = None,
    ) -> "TransactionGraph":
        """
        Build a graph, synthesising a stub node for every referenced address
        that has no wallet snapshot. Stubs take their activity window and
        transaction count from the transfers that mention them.
        """
        edges = tuple(transfers)
        if isinstance(wallets, Mapping):
            node_map = dict(wallets)
        else:
            node_map = {w.address: w for w in wallets}

        seen: Dict[str, List[TransferEdge]] = {}
        for e in edges:
            seen.setdefault(e.source, []).append(e)
            if e.target != e.source:
                seen.setdefault(e.target, []).append(e)
        for address in include:
            seen.setdefault(address, [])

        for address, touching in seen.items():
            if address in node_map:
                continue
            stamps = [e.timestamp for e in touching]
            node_map[address] = WalletNode(
                address=address,
                transaction_count=len(touching),
                first_activity=min(stamps) if stamps else None,
                last_activity=max(stamps) if stamps else None,
                synthetic=True,
            )

        return cls(node_map, edges, reference_tz=reference_tz, as_of=as_of)

    def _latest_activity(self) -> Optional[datetime]:
        stamps = [e.timestamp for e in self._edges]
        stamps.extend(n.last_activity for n in self._nodes.values() if n.last_activity is not None)
        return max(stamps) if stamps else None

    @property
    def nodes(self) -> Mapping[str, WalletNode]:
        return self._nodes

    @property
    def edges(self) -> Tuple[TransferEdge, ...]:
        return self._edges

    @property
    def as_of(self) -> Optional[datetime]:
        return self._as_of

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    def __contains__(self, address: object) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def node(self, address: str) -> WalletNode:
        return self._nodes[address]

    def out_edges(self, address: str) -> Tuple[TransferEdge, ...]:
        return tuple(self._edges[i] for i in self._out.get(address, ()))

    def in_edges(self, address: str) -> Tuple[TransferEdge, ...]:
        return tuple(self._edges[i] for i in self._in.get(address, ()))

    def edges_of(self, address: str) -> Tuple[TransferEdge, ...]:
        """Transfers touching `address` in graph order; self-transfers appear once."""
        idx = sorted(set(self._out.get(address, ())) | set(self._in.get(address, ())))
        return tuple(self._edges[i] for i in idx)

    def neighbors_undirected(self, address: str) -> Set[str]:
        # exposure can come from in/out flows; treat as undirected neighbourhood
        out = {self._edges[i].target for i in self._out.get(address, ())}
        inc = {self._edges[i].source for i in self._in.get(address, ())}
        return (out | inc) - {address}

    def k_hop_layers(self, start: str, max_hops: int) -> List[Set[str]]:
        """
        layers[h] = set of wallets at EXACTLY h undirected hops from start
        layers[0] = {start}
        """
        if start not in self._nodes:
            return []

        layers: List[Set[str]] = [{start}]
        visited: Set[str] = {start}
        frontier: Set[str] = {start}

        for _hop in range(1, max_hops + 1):
            nxt: Set[str] = set()
            for n in frontier:
                nxt |= self.neighbors_undirected(n)
            nxt -= visited
            layers.append(nxt)
            visited |= nxt
            frontier = nxt

        return layers

    def find_edge(self, tx_id: str) -> Optional[TransferEdge]:
        for e in self._edges:
            if e.id == tx_id:
                return e
        return None

    def local_time(self, ts: datetime) -> datetime:
        return ts.astimezone(self._tz)

    @cached_property
    def flow_graph(self) -> nx.DiGraph:
        """
        Directed graph: source -> target, parallel transfers collapsed.
        Aggregates transfer counts and amounts per edge.
        """
        g = nx.DiGraph()
        g.add_nodes_from(self._nodes)

        edge_data: Dict[Tuple[str, str], Dict[str, float]] = {}
        for e in self._edges:
            data = edge_data.setdefault((e.source, e.target), {"tx_count": 0, "amount": 0.0})
            data["tx_count"] += 1
            data["amount"] += e.value

        for (src, dst), data in edge_data.items():
            g.add_edge(src, dst, tx_count=data["tx_count"], amount=data["amount"])

        return g
