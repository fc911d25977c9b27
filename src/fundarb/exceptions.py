"""Custom exceptions for the funding opportunity engine.

All collector, execution and configuration exceptions live here
to avoid circular imports between modules. Risk Gate rejections are
not exceptions: they are returned as AdmissionDecision values.
"""


class EngineError(Exception):
    """Base exception for all engine errors."""


class CollectorFailure(EngineError):
    """Raised when one exchange's funding snapshot fetch fails.

    Isolated per exchange: the cycle proceeds with the remaining exchanges.
    """

    def __init__(self, exchange: str, message: str) -> None:
        super().__init__(f"{exchange}: {message}")
        self.exchange = exchange


class OrderFailure(EngineError):
    """Raised when an exchange rejects an order placed by the engine."""

    def __init__(self, exchange: str, symbol: str, message: str) -> None:
        super().__init__(f"{exchange} {symbol}: {message}")
        self.exchange = exchange
        self.symbol = symbol


class EntryOrderFailure(OrderFailure):
    """Entry leg rejected. No exposure was taken."""


class UnwindOrderFailure(OrderFailure):
    """Unwind rejected. The entry position is still open on the exchange."""


class DeadlineMissed(EngineError):
    """Raised when the funding deadline passed before the entry leg fired."""


class InvalidRiskLimits(EngineError):
    """Raised when a risk limits update fails boundary validation."""


class UnknownExchange(EngineError):
    """Raised when an operation targets an exchange with no adapter."""
