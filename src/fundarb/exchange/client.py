"""Abstract per-exchange adapter interface.

Each supported exchange implements this capability set. The engine never
talks to an adapter directly; it goes through ExchangePort, which routes by
exchange id and isolates per-exchange failures.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from fundarb.models import (
    AccountBalance,
    ExchangePosition,
    FundingObservation,
    OrderHandle,
    PositionSide,
)


class ExchangeAdapter(ABC):
    """Abstract base class for exchange adapters."""

    exchange_id: str

    @abstractmethod
    async def connect(self) -> None:
        """Initialize connection and load markets."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release network resources (CRITICAL for ccxt async)."""
        ...

    @abstractmethod
    async def fetch_funding_observations(
        self, symbols: list[str] | None = None
    ) -> list[FundingObservation]:
        """Fetch current funding rates for linear perpetuals.

        Args:
            symbols: Engine symbols ("BTCUSDT") to restrict to. None = all.
        """
        ...

    @abstractmethod
    async def get_open_position(self, symbol: str) -> ExchangePosition | None:
        """Return the live position for a symbol, or None if flat."""
        ...

    @abstractmethod
    async def place_directional_order(
        self,
        symbol: str,
        side: PositionSide,
        margin: Decimal,
        leverage: int,
    ) -> OrderHandle:
        """Open a market position sized from a margin amount and leverage.

        Raises:
            EntryOrderFailure: If the exchange rejects the order.
        """
        ...

    @abstractmethod
    async def close_position(self, symbol: str) -> OrderHandle | None:
        """Close the open position on a symbol at market (reduce-only).

        Returns:
            The closing fill, or None if there was no position to close.

        Raises:
            UnwindOrderFailure: If the exchange rejects the close.
        """
        ...

    @abstractmethod
    async def fetch_balance(self) -> AccountBalance:
        """Fetch quote-currency free and total margin."""
        ...
