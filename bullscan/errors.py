"""Error taxonomy shared across the tick-to-signal pipeline.

Insufficient data and rate-limit waits are deliberately absent: the first
is a no-op and the second is a suspension, neither is an exception.
"""


class BadResolution(ValueError):
    """User-supplied resolution string could not be normalized."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Bad resolution: {value}")
        self.value = value


class BrokerError(RuntimeError):
    """The broker REST call failed at the transport or HTTP level."""


class FetchExhausted(RuntimeError):
    """Historical data could not be obtained after the maximum retries."""

    def __init__(self, symbol: str, resolution: str, attempts: int) -> None:
        super().__init__(
            f"Fetch exhausted for {symbol}@{resolution} after {attempts} attempt(s)"
        )
        self.symbol = symbol
        self.resolution = resolution
        self.attempts = attempts


class StorageError(RuntimeError):
    """The persistent candle store failed (I/O, corruption, lock timeout)."""
