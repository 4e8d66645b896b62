from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter
from datetime import datetime
from typing import List, Optional, Set

from services.blockchain.sources import TransferSource
from services.errors import AddressInvalid, DataUnavailable, InvariantViolation
from services.graph.frames import edges_from_frame
from services.graph.models import TransactionGraph, TransferEdge

logger = logging.getLogger(__name__)

# base58 alphabet (no 0, O, I, l), 32-44 chars for the reference chain
ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def validate_address(address: object) -> str:
    if not isinstance(address, str) or not address:
        raise AddressInvalid(address, "wallet address is required")
    if not ADDRESS_RE.match(address):
        raise AddressInvalid(address)
    return address


def merge_transfers(batches: List[List[TransferEdge]]) -> List[TransferEdge]:
    """
    Merge transfer lists fetched for different wallets.

    The same transfer shows up once per endpoint we fetched. Transfers with a
    tx_id are deduplicated by id; anonymous ones by their full field tuple,
    keeping the largest multiplicity seen in any single fetch so genuine
    parallel transfers survive.
    """
    merged: List[TransferEdge] = []
    seen_ids: Set[str] = set()
    kept: Counter = Counter()

    for batch in batches:
        counts: Counter = Counter()
        for e in batch:
            if e.tx_id:
                if e.tx_id in seen_ids:
                    continue
                seen_ids.add(e.tx_id)
                merged.append(e)
                continue
            counts[e.key] += 1
            if counts[e.key] > kept[e.key]:
                kept[e.key] = counts[e.key]
                merged.append(e)

    return merged


class GraphStore:
    """
    Loads the transfer neighbourhood of one wallet into a TransactionGraph.

    The store only performs I/O against its source; caching is layered on top
    by the caller.
    """

    def __init__(
        self,
        source: TransferSource,
        reference_tz: str = "UTC",
        default_timeout: Optional[float] = None,
    ):
        self.source = source
        self.reference_tz = reference_tz
        self.default_timeout = default_timeout

    def load(
        self,
        address: str,
        depth: int = 1,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
        as_of: Optional[datetime] = None,
    ) -> TransactionGraph:
        """
        Args:
            address: Wallet to analyse (validated before any fetch)
            depth: 1 = transfers touching `address`; each extra hop also pulls
                the transfers of wallets discovered on the previous hop
            timeout: Overall deadline in seconds for every fetch of this load
            cancel: Event the caller may set to abandon the load
            as_of: Reference time for age-based factors (defaults to latest activity)

        Raises:
            AddressInvalid: address fails format validation
            DataUnavailable: source unreachable, timed out or load cancelled
        """
        validate_address(address)
        if depth < 1:
            raise ValueError(f"depth must be >= 1, got {depth}")

        timeout = timeout if timeout is not None else self.default_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        batches: List[List[TransferEdge]] = []
        fetched: Set[str] = set()
        frontier: Set[str] = {address}

        for hop in range(depth):
            discovered: Set[str] = set()
            for wallet in sorted(frontier):
                edges = self._fetch(wallet, deadline, cancel)
                fetched.add(wallet)
                batches.append(edges)
                for e in edges:
                    discovered.add(e.source)
                    discovered.add(e.target)
            frontier = discovered - fetched
            logger.debug("Hop %d from %s discovered %d new wallets", hop + 1, address, len(frontier))
            if not frontier:
                break

        transfers = merge_transfers(batches)
        endpoints = {address}
        for e in transfers:
            endpoints.add(e.source)
            endpoints.add(e.target)

        remaining = self._remaining(deadline, cancel)
        try:
            wallets = self.source.fetch_wallets(endpoints, timeout=remaining)
        except InvariantViolation as exc:
            raise DataUnavailable(f"inconsistent wallet snapshot from source: {exc}") from exc
        except (OSError, KeyError, TypeError, ValueError) as exc:
            raise DataUnavailable(f"wallet snapshots unavailable: {exc}") from exc
        self._remaining(deadline, cancel)

        graph = TransactionGraph.from_transfers(
            transfers,
            wallets={a: w for a, w in wallets.items() if a in endpoints},
            include=(address,),
            reference_tz=self.reference_tz,
            as_of=as_of,
        )
        logger.info(
            "Loaded graph for %s: depth=%d wallets=%d transfers=%d",
            address,
            depth,
            len(graph.nodes),
            len(graph.edges),
        )
        return graph

    def _remaining(self, deadline: Optional[float], cancel: Optional[threading.Event]) -> Optional[float]:
        if cancel is not None and cancel.is_set():
            raise DataUnavailable("graph load cancelled by caller")
        if deadline is None:
            return None
        left = deadline - time.monotonic()
        if left <= 0:
            raise DataUnavailable("graph load timed out waiting on the transfer source")
        return left

    def _fetch(
        self, wallet: str, deadline: Optional[float], cancel: Optional[threading.Event]
    ) -> List[TransferEdge]:
        remaining = self._remaining(deadline, cancel)
        try:
            frame = self.source.fetch_transfers(wallet, timeout=remaining)
            edges = edges_from_frame(frame)
        except (InvariantViolation, KeyError, TypeError, ValueError) as exc:
            raise DataUnavailable(f"unusable transfer payload for {wallet}: {exc}") from exc
        except OSError as exc:
            raise DataUnavailable(f"transfer source failed for {wallet}: {exc}") from exc
        self._remaining(deadline, cancel)
        return edges

