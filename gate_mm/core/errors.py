"""Error taxonomy of the strategy engine.

- ``ConfigError``: fatal to starting a run, the session never leaves IDLE.
- ``GatewayError``: a single place/cancel call failed; logged, the next tick retries.
- ``FeedError``: one inbound message could not be parsed; it is dropped.
- ``SimulationInvariantViolation``: a paper fill would drive a counter negative; clamped.
"""


class MarketMakerError(Exception):
    pass


class ConfigError(MarketMakerError, ValueError):
    pass


class GatewayError(MarketMakerError):
    def __init__(self, message: str, *, operation: str = "", retryable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable


class FeedError(MarketMakerError):
    def __init__(self, message: str, *, raw=None):
        super().__init__(message)
        self.raw = raw


class SimulationInvariantViolation(MarketMakerError):
    pass
