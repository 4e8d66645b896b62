from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)


def make_key(op: str, subject: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic key: parameter order and whitespace never change it."""
    canonical = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    return f"{op}:{subject}:{hashlib.sha256(canonical.encode()).hexdigest()[:16]}"


def entity_batch_hash(entities: Iterable[Any]) -> str:
    """Order-insensitive hash of an entity batch (entities need id/category/counterparties)."""
    rows = sorted(
        (
            [
                e.id,
                e.category,
                sorted(e.counterparties),
                e.transaction_count,
                e.risk_score,
            ]
            for e in entities
        ),
        key=lambda r: json.dumps(r, default=str),
    )
    return hashlib.sha256(json.dumps(rows, separators=(",", ":")).encode()).hexdigest()


class ResultCache:
    """
    Thread-safe TTL map for computed results.

    A single lock guards the table; values are stored as-is and must be
    treated as read-only by callers.
    """

    def __init__(self, default_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be > 0, got {default_ttl}")
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Tuple[Any, bool]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return None, False
            self._hits += 1
            return value, True

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        expires_at = self._clock() + ttl
        with self._lock:
            self._entries[key] = (value, expires_at)

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        with self._lock:
            snapshot = list(self._entries.items())

        now = self._clock()
        expired = [key for key, (_, expires_at) in snapshot if expires_at <= now]

        evicted = 0
        with self._lock:
            for key in expired:
                entry = self._entries.get(key)
                # a concurrent set() may have refreshed the entry since the snapshot
                if entry is not None and entry[1] <= now:
                    del self._entries[key]
                    evicted += 1

        if evicted:
            logger.info("Cache cleanup evicted %d expired entries", evicted)
        return evicted

    def get_or_compute(self, key: str, compute: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Compute outside the lock; concurrent misses may compute twice, last write wins."""
        value, found = self.get(key)
        if found:
            return value
        value = compute()
        self.set(key, value, ttl)
        return value

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            expiries = [expires_at for _, expires_at in self._entries.values()]
            hits, misses = self._hits, self._misses

        now = self._clock()
        live = sum(1 for expires_at in expiries if expires_at > now)
        return {
            "entries": len(expiries),
            "live": live,
            "expired": len(expiries) - live,
            "hits": hits,
            "misses": misses,
            "default_ttl": self.default_ttl,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
