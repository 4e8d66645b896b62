from __future__ import annotations


class RiskEngineError(Exception):
    """Base class for every error raised by the scoring/clustering core."""


class AddressInvalid(RiskEngineError):
    """Wallet address failed format validation (user-correctable)."""

    def __init__(self, address: object, reason: str = "invalid wallet address format"):
        self.address = address
        self.reason = reason
        super().__init__(f"{reason}: {address!r}")


class DataUnavailable(RiskEngineError):
    """Upstream transfer source unreachable, timed out or cancelled (retryable)."""


class InvariantViolation(RiskEngineError):
    """Internal graph consistency is broken. Indicates a bug, never auto-repaired."""


class BatchTooLarge(RiskEngineError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"batch of {size} addresses exceeds the limit of {limit}")
