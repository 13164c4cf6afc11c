"""Exception types shared across the engine."""


class TradingError(Exception):
    """Base class for engine errors."""


class ConfigurationError(TradingError):
    """Missing or invalid startup configuration (credentials, keys). Fatal."""


class MalformedEventError(TradingError):
    """An inbound stream payload could not be decoded. Never retried."""


class UnknownPairError(TradingError):
    """An event referenced a symbol with no active TradingPair."""


class ExchangeError(TradingError):
    """A REST call to the exchange failed."""

    def __init__(self, message: str, status: int | None = None, code: int | None = None):
        super().__init__(message)
        self.status = status
        self.code = code


class PositionStateError(TradingError):
    """Illegal Position lifecycle transition."""


class PairInUseError(TradingError):
    """A pair cannot be deactivated while it holds an open position."""


class StrategyInUseError(TradingError):
    """A strategy cannot be disabled while it holds open positions."""
