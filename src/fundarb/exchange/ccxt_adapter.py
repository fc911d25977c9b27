"""Generic exchange adapter via ccxt async.

One class serves every ccxt exchange id (binance, bybit, okx, ...): funding
rates come from the unified fetch_funding_rates endpoint, positions from
fetch_positions, and orders are plain market orders with reduceOnly on close.
"""

from decimal import Decimal, InvalidOperation

import ccxt.async_support as ccxt_async
from ccxt.base.errors import BaseError as CcxtError

from fundarb.config import ExchangeCredentials
from fundarb.exceptions import EntryOrderFailure, UnknownExchange, UnwindOrderFailure
from fundarb.exchange.client import ExchangeAdapter
from fundarb.exchange.types import normalize_symbol, quantity_from_margin, to_unified_symbol
from fundarb.logging import get_logger
from fundarb.models import (
    AccountBalance,
    ExchangePosition,
    FundingObservation,
    OrderHandle,
    PositionSide,
)

logger = get_logger(__name__)

_QUOTE = "USDT"


def _to_decimal(value: object, default: Decimal = Decimal("0")) -> Decimal:
    if value is None:
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _ms_to_seconds(value: object) -> float:
    if value is None:
        return 0.0
    try:
        return int(value) / 1000
    except (TypeError, ValueError):
        return 0.0


class CcxtExchangeAdapter(ExchangeAdapter):
    """Exchange adapter backed by a ccxt async exchange instance.

    Args:
        exchange_id: ccxt exchange id, e.g. "bybit".
        credentials: API credentials (empty for public-only use).
        exchange: Pre-built ccxt exchange instance (tests inject a mock).
    """

    def __init__(
        self,
        exchange_id: str,
        credentials: ExchangeCredentials | None = None,
        exchange: object | None = None,
    ) -> None:
        self.exchange_id = exchange_id
        if exchange is None:
            exchange = self._build_exchange(exchange_id, credentials or ExchangeCredentials())
        self._exchange = exchange
        self._markets: dict = {}

    @staticmethod
    def _build_exchange(exchange_id: str, credentials: ExchangeCredentials):
        exchange_class = getattr(ccxt_async, exchange_id, None)
        if exchange_class is None:
            raise UnknownExchange(f"ccxt has no exchange '{exchange_id}'")

        config: dict = {
            "apiKey": credentials.api_key.get_secret_value(),
            "secret": credentials.api_secret.get_secret_value(),
            "enableRateLimit": True,
            "options": {"defaultType": "swap"},
        }
        password = credentials.password.get_secret_value()
        if password:
            config["password"] = password

        exchange = exchange_class(config)
        if credentials.testnet:
            exchange.set_sandbox_mode(True)
        return exchange

    async def connect(self) -> None:
        """Initialize connection by loading markets."""
        logger.info("connecting_to_exchange", exchange=self.exchange_id)
        self._markets = await self._exchange.load_markets()
        logger.info(
            "exchange_connected",
            exchange=self.exchange_id,
            market_count=len(self._markets),
        )

    async def close(self) -> None:
        """Clean up ccxt async resources."""
        await self._exchange.close()
        logger.info("exchange_connection_closed", exchange=self.exchange_id)

    async def fetch_funding_observations(
        self, symbols: list[str] | None = None
    ) -> list[FundingObservation]:
        """Fetch funding rates and map them to FundingObservation.

        Entries without a funding rate or next funding time are skipped.
        Binance reports the upcoming settlement as fundingTimestamp and leaves
        nextFundingTimestamp empty, so the former is used as a fallback.
        """
        unified = [to_unified_symbol(s) for s in symbols] if symbols else None
        rates = await self._exchange.fetch_funding_rates(unified)

        observations: list[FundingObservation] = []
        for unified_symbol, data in rates.items():
            rate = data.get("fundingRate")
            if rate is None:
                continue
            funding_ts = data.get("fundingTimestamp")
            next_ts = data.get("nextFundingTimestamp") or funding_ts
            if not next_ts:
                continue
            mark = _to_decimal(data.get("markPrice"))
            observations.append(
                FundingObservation(
                    exchange=self.exchange_id,
                    symbol=normalize_symbol(data.get("symbol") or unified_symbol),
                    funding_rate=_to_decimal(rate),
                    funding_time=_ms_to_seconds(funding_ts),
                    next_funding_time=_ms_to_seconds(next_ts),
                    mark_price=mark if mark > 0 else None,
                )
            )

        logger.debug(
            "funding_rates_fetched",
            exchange=self.exchange_id,
            count=len(observations),
        )
        return observations

    async def get_open_position(self, symbol: str) -> ExchangePosition | None:
        """Return the first non-empty position on the symbol, if any."""
        unified = to_unified_symbol(symbol)
        positions = await self._exchange.fetch_positions([unified])
        for pos in positions:
            contracts = _to_decimal(pos.get("contracts"))
            if contracts == 0:
                continue
            contract_size = _to_decimal(pos.get("contractSize"), Decimal("1"))
            side = (pos.get("side") or "").lower()
            return ExchangePosition(
                exchange=self.exchange_id,
                symbol=symbol,
                side=PositionSide.SHORT if side == "short" else PositionSide.LONG,
                quantity=abs(contracts) * contract_size,
                entry_price=_to_decimal(pos.get("entryPrice")),
                mark_price=_to_decimal(pos.get("markPrice")),
                unrealized_pnl=_to_decimal(pos.get("unrealizedPnl")),
            )
        return None

    async def place_directional_order(
        self,
        symbol: str,
        side: PositionSide,
        margin: Decimal,
        leverage: int,
    ) -> OrderHandle:
        """Set leverage, size from margin at the last price, and market-enter."""
        unified = to_unified_symbol(symbol)
        try:
            await self._exchange.set_leverage(leverage, unified)
            ticker = await self._exchange.fetch_ticker(unified)
            price = _to_decimal(ticker.get("last"))
            contract_size = self._contract_size(unified)
            base_qty = quantity_from_margin(margin, price, leverage)
            amount = Decimal(
                self._exchange.amount_to_precision(unified, float(base_qty / contract_size))
            )
            if amount <= 0:
                raise EntryOrderFailure(
                    self.exchange_id, symbol, f"margin {margin} too small at price {price}"
                )

            logger.info(
                "placing_entry_order",
                exchange=self.exchange_id,
                symbol=unified,
                side=side.value,
                amount=str(amount),
                leverage=leverage,
            )
            order = await self._exchange.create_order(
                unified, "market", side.entry_order_side.value, float(amount)
            )
        except CcxtError as e:
            raise EntryOrderFailure(self.exchange_id, symbol, str(e)) from e

        return self._to_handle(order, symbol, side.entry_order_side, amount * contract_size, price)

    async def close_position(self, symbol: str) -> OrderHandle | None:
        """Close the open position with a reduce-only market order."""
        try:
            position = await self.get_open_position(symbol)
            if position is None:
                logger.warning(
                    "close_position_nothing_open",
                    exchange=self.exchange_id,
                    symbol=symbol,
                )
                return None

            unified = to_unified_symbol(symbol)
            contract_size = self._contract_size(unified)
            close_side = position.side.close_order_side
            amount = position.quantity / contract_size
            logger.info(
                "placing_close_order",
                exchange=self.exchange_id,
                symbol=unified,
                side=close_side.value,
                amount=str(amount),
            )
            order = await self._exchange.create_order(
                unified,
                "market",
                close_side.value,
                float(amount),
                None,
                {"reduceOnly": True},
            )
        except CcxtError as e:
            raise UnwindOrderFailure(self.exchange_id, symbol, str(e)) from e

        return self._to_handle(
            order, symbol, close_side, position.quantity, position.mark_price
        )

    async def fetch_balance(self) -> AccountBalance:
        """Fetch USDT free/total balance."""
        balance = await self._exchange.fetch_balance()
        quote = balance.get(_QUOTE, {})
        if not isinstance(quote, dict):
            quote = {}
        return AccountBalance(
            exchange=self.exchange_id,
            free=_to_decimal(quote.get("free")),
            total=_to_decimal(quote.get("total")),
        )

    def _contract_size(self, unified: str) -> Decimal:
        market = self._markets.get(unified) or {}
        size = _to_decimal(market.get("contractSize"), Decimal("1"))
        return size if size > 0 else Decimal("1")

    def _to_handle(
        self,
        order: dict,
        symbol: str,
        side,
        fallback_qty: Decimal,
        fallback_price: Decimal,
    ) -> OrderHandle:
        filled_price = _to_decimal(order.get("average") or order.get("price"), fallback_price)
        fee = order.get("fee") or {}
        return OrderHandle(
            order_id=str(order.get("id", "")),
            exchange=self.exchange_id,
            symbol=symbol,
            side=side,
            filled_qty=fallback_qty,
            filled_price=filled_price,
            fee=_to_decimal(fee.get("cost")) if isinstance(fee, dict) else Decimal("0"),
        )
