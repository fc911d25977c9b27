"""Tests for ExchangePort routing and per-exchange failure isolation."""

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from fundarb.exceptions import UnknownExchange
from fundarb.exchange.client import ExchangeAdapter
from fundarb.exchange.port import ExchangePort
from fundarb.models import AccountBalance, FundingObservation, PositionSide


def _make_adapter(exchange_id: str, rate: str = "0.0001") -> MagicMock:
    adapter = MagicMock(spec=ExchangeAdapter)
    adapter.exchange_id = exchange_id
    adapter.fetch_funding_observations.return_value = [
        FundingObservation(
            exchange=exchange_id,
            symbol="BTCUSDT",
            funding_rate=Decimal(rate),
            funding_time=1_700_000_000.0,
            next_funding_time=1_700_028_800.0,
        )
    ]
    adapter.fetch_balance.return_value = AccountBalance(
        exchange=exchange_id, free=Decimal("400"), total=Decimal("1000")
    )
    return adapter


@pytest.fixture
def adapters() -> dict[str, MagicMock]:
    return {ex: _make_adapter(ex) for ex in ("binance", "bybit", "okx")}


@pytest.fixture
def port(adapters) -> ExchangePort:
    return ExchangePort(list(adapters.values()))


class TestConstruction:
    def test_duplicate_exchange_rejected(self) -> None:
        with pytest.raises(ValueError):
            ExchangePort([_make_adapter("bybit"), _make_adapter("bybit")])

    def test_exchange_ids(self, port) -> None:
        assert port.exchange_ids == ["binance", "bybit", "okx"]

    def test_unknown_exchange(self, port) -> None:
        with pytest.raises(UnknownExchange):
            port.adapter("kraken")


class TestFundingSnapshots:
    @pytest.mark.asyncio
    async def test_all_exchanges(self, port, adapters) -> None:
        snapshots = await port.get_funding_snapshots(["BTCUSDT"])

        assert set(snapshots) == {"binance", "bybit", "okx"}
        adapters["okx"].fetch_funding_observations.assert_awaited_once_with(["BTCUSDT"])

    @pytest.mark.asyncio
    async def test_failing_exchange_is_isolated(self, port, adapters) -> None:
        adapters["bybit"].fetch_funding_observations.side_effect = TimeoutError("timed out")

        snapshots = await port.get_funding_snapshots()

        assert set(snapshots) == {"binance", "okx"}
        assert port.failure_counts["bybit"] == 1

        await port.get_funding_snapshots()
        assert port.failure_counts["bybit"] == 2
        assert port.failure_counts["binance"] == 0

    @pytest.mark.asyncio
    async def test_all_failing_returns_empty(self, port, adapters) -> None:
        for adapter in adapters.values():
            adapter.fetch_funding_observations.side_effect = RuntimeError("down")

        assert await port.get_funding_snapshots() == {}

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, port, adapters) -> None:
        adapters["okx"].fetch_funding_observations.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await port.get_funding_snapshots()


class TestRouting:
    @pytest.mark.asyncio
    async def test_place_directional_order(self, port, adapters) -> None:
        await port.place_directional_order(
            "bybit", "BTCUSDT", PositionSide.SHORT, Decimal("50"), 3
        )

        adapters["bybit"].place_directional_order.assert_awaited_once_with(
            "BTCUSDT", PositionSide.SHORT, Decimal("50"), 3
        )
        adapters["binance"].place_directional_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_close_position(self, port, adapters) -> None:
        await port.close_position("okx", "ETHUSDT")
        adapters["okx"].close_position.assert_awaited_once_with("ETHUSDT")

    @pytest.mark.asyncio
    async def test_get_open_position(self, port, adapters) -> None:
        adapters["binance"].get_open_position.return_value = None

        assert await port.get_open_position("BTCUSDT", "binance") is None
        adapters["binance"].get_open_position.assert_awaited_once_with("BTCUSDT")

    @pytest.mark.asyncio
    async def test_unknown_exchange_order(self, port) -> None:
        with pytest.raises(UnknownExchange):
            await port.place_directional_order(
                "kraken", "BTCUSDT", PositionSide.LONG, Decimal("50"), 3
            )


class TestBalances:
    @pytest.mark.asyncio
    async def test_available_margin(self, port) -> None:
        assert await port.fetch_available_margin("binance") == Decimal("400")

    @pytest.mark.asyncio
    async def test_portfolio_value_sums_totals(self, port) -> None:
        assert await port.fetch_portfolio_value() == Decimal("3000")

    @pytest.mark.asyncio
    async def test_portfolio_value_skips_failures(self, port, adapters) -> None:
        adapters["okx"].fetch_balance.side_effect = RuntimeError("auth")

        assert await port.fetch_portfolio_value() == Decimal("2000")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_failure_does_not_raise(self, port, adapters) -> None:
        adapters["okx"].connect.side_effect = RuntimeError("bad credentials")

        await port.connect_all()

        for adapter in adapters.values():
            adapter.connect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_continues_past_failure(self, port, adapters) -> None:
        adapters["binance"].close.side_effect = RuntimeError("already closed")

        await port.close_all()

        adapters["bybit"].close.assert_awaited_once()
        adapters["okx"].close.assert_awaited_once()
