"""ExchangePort -- routes engine calls to per-exchange adapters.

Snapshot collection fans out to every adapter concurrently. A failing
exchange is dropped from the cycle's snapshot, logged, and counted; the
remaining exchanges still produce a result.
"""

import asyncio
from collections import Counter
from decimal import Decimal

from fundarb.exceptions import CollectorFailure, UnknownExchange
from fundarb.exchange.client import ExchangeAdapter
from fundarb.logging import get_logger
from fundarb.models import (
    AccountBalance,
    ExchangePosition,
    FundingObservation,
    OrderHandle,
    PositionSide,
)

logger = get_logger(__name__)


class ExchangePort:
    """Capability set the engine uses to reach exchanges.

    Args:
        adapters: One adapter per exchange. Ids must be unique.
    """

    def __init__(self, adapters: list[ExchangeAdapter]) -> None:
        self._adapters: dict[str, ExchangeAdapter] = {}
        for adapter in adapters:
            if adapter.exchange_id in self._adapters:
                raise ValueError(f"Duplicate adapter for exchange '{adapter.exchange_id}'")
            self._adapters[adapter.exchange_id] = adapter
        self.failure_counts: Counter[str] = Counter()

    @property
    def exchange_ids(self) -> list[str]:
        return list(self._adapters)

    def adapter(self, exchange_id: str) -> ExchangeAdapter:
        try:
            return self._adapters[exchange_id]
        except KeyError:
            raise UnknownExchange(f"No adapter configured for '{exchange_id}'") from None

    async def connect_all(self) -> None:
        """Connect every adapter. A failed connect is logged, not raised."""
        results = await asyncio.gather(
            *(a.connect() for a in self._adapters.values()),
            return_exceptions=True,
        )
        for exchange_id, result in zip(self._adapters, results):
            if isinstance(result, Exception):
                logger.error(
                    "exchange_connect_failed",
                    exchange=exchange_id,
                    error=str(result),
                )

    async def close_all(self) -> None:
        """Close every adapter, continuing past individual failures."""
        for exchange_id, adapter in self._adapters.items():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning("exchange_close_failed", exchange=exchange_id, error=str(e))

    async def get_funding_snapshots(
        self, symbols: list[str] | None = None
    ) -> dict[str, list[FundingObservation]]:
        """Fetch funding observations from all exchanges concurrently.

        Returns:
            Observations keyed by exchange id. Exchanges whose fetch failed
            are absent from the result.
        """
        exchange_ids = list(self._adapters)
        results = await asyncio.gather(
            *(
                self._adapters[ex].fetch_funding_observations(symbols)
                for ex in exchange_ids
            ),
            return_exceptions=True,
        )

        snapshots: dict[str, list[FundingObservation]] = {}
        for exchange_id, result in zip(exchange_ids, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failure = CollectorFailure(exchange_id, str(result))
                self.failure_counts[exchange_id] += 1
                logger.warning(
                    "collector_failure",
                    exchange=failure.exchange,
                    error=str(result),
                    failures=self.failure_counts[exchange_id],
                )
                continue
            snapshots[exchange_id] = result

        logger.debug(
            "funding_snapshots_collected",
            exchanges=len(snapshots),
            observations=sum(len(v) for v in snapshots.values()),
        )
        return snapshots

    async def get_open_position(
        self, symbol: str, exchange_id: str
    ) -> ExchangePosition | None:
        return await self.adapter(exchange_id).get_open_position(symbol)

    async def place_directional_order(
        self,
        exchange_id: str,
        symbol: str,
        side: PositionSide,
        margin: Decimal,
        leverage: int,
    ) -> OrderHandle:
        return await self.adapter(exchange_id).place_directional_order(
            symbol, side, margin, leverage
        )

    async def close_position(self, exchange_id: str, symbol: str) -> OrderHandle | None:
        return await self.adapter(exchange_id).close_position(symbol)

    async def fetch_balance(self, exchange_id: str) -> AccountBalance:
        return await self.adapter(exchange_id).fetch_balance()

    async def fetch_available_margin(self, exchange_id: str) -> Decimal:
        """Free quote-currency margin on one exchange."""
        balance = await self.fetch_balance(exchange_id)
        return balance.free

    async def fetch_portfolio_value(self) -> Decimal:
        """Sum of total quote balances across exchanges that respond."""
        results = await asyncio.gather(
            *(a.fetch_balance() for a in self._adapters.values()),
            return_exceptions=True,
        )
        total = Decimal("0")
        for exchange_id, result in zip(self._adapters, results):
            if isinstance(result, Exception):
                logger.warning("balance_fetch_failed", exchange=exchange_id, error=str(result))
                continue
            total += result.total
        return total
