"""Tests for ExecutionScheduler -- the funding-aligned task state machine.

Time is driven by the FakeClock fixture: sleep() advances the clock
instantly, so a full ARMED -> DONE run takes no wall time.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from fundarb.config import EngineSettings
from fundarb.exceptions import EntryOrderFailure, UnwindOrderFailure
from fundarb.exchange.port import ExchangePort
from fundarb.execution.scheduler import (
    ALREADY_FLAT,
    COMPLETED,
    DEADLINE_MISSED,
    ENTRY_FAILED,
    OUTSIDE_ADMISSION_WINDOW,
    UNWIND_FAILED,
    ExecutionScheduler,
    realized_pnl,
)
from fundarb.models import (
    EntryLeg,
    ExchangePosition,
    Opportunity,
    OrderHandle,
    OrderSide,
    PositionSide,
    ScenarioKind,
    TaskState,
)
from fundarb.notify import Notifier, Priority
from fundarb.opportunity.rules import ScenarioConfig
from fundarb.pnl.ledger import PositionLedger


def _make_opportunity(symbol: str, deadline: float) -> Opportunity:
    return Opportunity(
        symbol=symbol,
        rule=ScenarioConfig().rule_for(ScenarioKind.OPPOSITE_SIGN),
        long_exchange="binance",
        short_exchange="bybit",
        long_funding_rate=Decimal("-0.004"),
        short_funding_rate=Decimal("0.003"),
        expected_profit=Decimal("0.007"),
        weighted_profit=Decimal("0.00665"),
        long_next_funding_time=deadline,
        short_next_funding_time=deadline,
    )


def _make_leg(side: PositionSide = PositionSide.LONG) -> EntryLeg:
    return EntryLeg(
        exchange="binance",
        side=side,
        margin=Decimal("100"),
        leverage=5,
        funding_rate=Decimal("-0.004"),
    )


def _fill(side: OrderSide, price: str, qty: str = "0.01", fee: str = "0.25") -> OrderHandle:
    return OrderHandle(
        order_id="o-1",
        exchange="binance",
        symbol="BTCUSDT",
        side=side,
        filled_qty=Decimal(qty),
        filled_price=Decimal(price),
        fee=Decimal(fee),
    )


@pytest.fixture
def port() -> MagicMock:
    port = MagicMock(spec=ExchangePort)
    port.get_open_position = AsyncMock(return_value=None)
    port.place_directional_order = AsyncMock(return_value=_fill(OrderSide.BUY, "50000"))
    port.close_position = AsyncMock(return_value=_fill(OrderSide.SELL, "50100"))
    return port


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=Notifier)


@pytest.fixture
def ledger(clock) -> PositionLedger:
    return PositionLedger(clock=clock)


@pytest.fixture
def scheduler(port, ledger, notifier, clock) -> ExecutionScheduler:
    return ExecutionScheduler(
        exchange_port=port,
        ledger=ledger,
        notifier=notifier,
        settings=EngineSettings(),
        clock=clock,
        sleep=clock.sleep,
    )


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_full_run_to_done(self, scheduler, port, ledger, notifier, clock) -> None:
        deadline = clock.now + 10
        fired_at: list[float] = []
        closed_at: list[float] = []

        async def _place(*args, **kwargs):
            fired_at.append(clock.now)
            return _fill(OrderSide.BUY, "50000")

        async def _close(*args, **kwargs):
            closed_at.append(clock.now)
            return _fill(OrderSide.SELL, "50100")

        port.place_directional_order.side_effect = _place
        port.close_position.side_effect = _close

        task = await scheduler.submit(_make_opportunity("BTCUSDT", deadline), _make_leg())
        assert task is not None
        assert task.state is TaskState.ARMED
        assert ledger.has_active("BTCUSDT")

        await scheduler.shutdown()

        assert task.state is TaskState.DONE
        assert task.result.reason == COMPLETED
        assert 0 < deadline - fired_at[0] <= 1.0
        assert closed_at[0] >= deadline + 2.0
        port.place_directional_order.assert_awaited_once_with(
            "binance", "BTCUSDT", PositionSide.LONG, Decimal("100"), 5
        )
        port.close_position.assert_awaited_once_with("binance", "BTCUSDT")

        # price +1.00, fees -0.50, funding 500 * 0.004 = +2.00
        assert task.result.realized_pnl == Decimal("2.5")
        assert ledger.daily_pnl == Decimal("2.5")
        assert not ledger.has_active("BTCUSDT")
        assert scheduler.in_flight == []
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[1] is Priority.INFO

    @pytest.mark.asyncio
    async def test_position_already_flat_at_unwind(
        self, scheduler, port, ledger, notifier, clock
    ) -> None:
        port.close_position.return_value = None

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.DONE
        assert task.result.reason == ALREADY_FLAT
        assert task.result.realized_pnl == Decimal("-0.25")
        assert ledger.daily_pnl == Decimal("-0.25")
        message, priority = notifier.notify.await_args.args
        assert priority is Priority.WARNING
        assert "closed externally" in message


class TestAdmissionWindow:
    @pytest.mark.asyncio
    async def test_past_deadline_aborts_without_firing(
        self, scheduler, port, ledger, notifier, clock
    ) -> None:
        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now - 1), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.ABORTED
        assert task.result.reason == DEADLINE_MISSED
        port.place_directional_order.assert_not_awaited()
        notifier.notify.assert_not_awaited()
        assert ledger.completed == [task]

    @pytest.mark.asyncio
    async def test_deadline_too_far_is_dropped(self, scheduler, port, notifier, clock) -> None:
        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 120), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.ABORTED
        assert task.result.reason == OUTSIDE_ADMISSION_WINDOW
        port.place_directional_order.assert_not_awaited()
        notifier.notify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deadline_passing_while_watching_never_fires_late(
        self, scheduler, port, notifier, clock
    ) -> None:
        clock.overshoot = 5.0  # every tick oversleeps

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 10), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.ABORTED
        assert task.result.reason == DEADLINE_MISSED
        port.place_directional_order.assert_not_awaited()
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[1] is Priority.WARNING


class TestOrderFailures:
    @pytest.mark.asyncio
    async def test_entry_failure_takes_no_exposure(self, scheduler, port, ledger, clock) -> None:
        port.place_directional_order.side_effect = EntryOrderFailure(
            "binance", "BTCUSDT", "insufficient margin"
        )

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.ABORTED
        assert task.result.reason == ENTRY_FAILED
        assert task.result.position_left_open is False
        port.close_position.assert_not_awaited()
        assert ledger.daily_pnl == Decimal("0")

    @pytest.mark.asyncio
    async def test_unwind_failure_escalates(self, scheduler, port, notifier, clock) -> None:
        port.close_position.side_effect = UnwindOrderFailure(
            "binance", "BTCUSDT", "exchange unavailable"
        )
        halted = []
        scheduler.set_position_left_open_handler(halted.append)

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())
        await scheduler.shutdown()

        assert task.state is TaskState.ABORTED
        assert task.result.reason == UNWIND_FAILED
        assert task.result.position_left_open is True
        assert task.result.entry is not None
        port.close_position.assert_awaited_once()  # no retry
        notifier.notify.assert_awaited_once()
        message, priority = notifier.notify.await_args.args
        assert priority is Priority.CRITICAL
        assert "left open" in message
        assert halted == [task]


class TestIdleGuard:
    @pytest.mark.asyncio
    async def test_second_submission_rejected_while_watching(
        self, port, ledger, notifier, clock
    ) -> None:
        """One ETHUSDT task watching: a second ETHUSDT submission is rejected."""
        release = asyncio.Event()

        async def _gated_sleep(seconds: float) -> None:
            await release.wait()
            await clock.sleep(seconds)

        scheduler = ExecutionScheduler(
            exchange_port=port,
            ledger=ledger,
            notifier=notifier,
            clock=clock,
            sleep=_gated_sleep,
        )
        first = await scheduler.submit(_make_opportunity("ETHUSDT", clock.now + 10), _make_leg())
        for _ in range(3):
            await asyncio.sleep(0)
        assert first.state is TaskState.WATCHING
        queries_before = port.get_open_position.await_count

        second = await scheduler.submit(
            _make_opportunity("ETHUSDT", clock.now + 10), _make_leg()
        )

        assert second is None
        assert scheduler.in_flight == [first]
        assert port.get_open_position.await_count == queries_before
        assert len(ledger.active_positions) == 1

        release.set()
        await scheduler.shutdown()
        assert first.state is TaskState.DONE

    @pytest.mark.asyncio
    async def test_different_symbols_run_concurrently(self, scheduler, clock) -> None:
        a = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())
        b = await scheduler.submit(_make_opportunity("ETHUSDT", clock.now + 5), _make_leg())

        assert a is not None and b is not None
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_live_position_rejects(self, scheduler, port, ledger, clock) -> None:
        async def _position(symbol: str, exchange_id: str):
            if exchange_id == "bybit":
                return ExchangePosition(
                    exchange="bybit",
                    symbol=symbol,
                    side=PositionSide.SHORT,
                    quantity=Decimal("1"),
                )
            return None

        port.get_open_position.side_effect = _position

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())

        assert task is None
        assert ledger.active_positions == []
        assert not scheduler.has_task("BTCUSDT")

    @pytest.mark.asyncio
    async def test_position_query_failure_rejects(self, scheduler, port, clock) -> None:
        port.get_open_position.side_effect = RuntimeError("timeout")

        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())

        assert task is None
        assert not scheduler.has_task("BTCUSDT")

    @pytest.mark.asyncio
    async def test_symbol_free_after_terminal(self, scheduler, clock) -> None:
        first = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now - 1), _make_leg())
        await scheduler.shutdown()
        assert first.state is TaskState.ABORTED

        second = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 5), _make_leg())

        assert second is not None
        await scheduler.shutdown()


class TestRealizedPnl:
    def test_short_leg(self) -> None:
        leg = _make_leg(PositionSide.SHORT)
        entry = _fill(OrderSide.SELL, "50000")
        exit_fill = _fill(OrderSide.BUY, "49900")

        # price +1.00, fees -0.50, funding +2.00
        assert realized_pnl(leg, entry, exit_fill) == Decimal("2.5")

    def test_no_exit_fill_books_only_entry_fee(self) -> None:
        leg = _make_leg()
        entry = _fill(OrderSide.BUY, "50000")

        # Exit price and funding received are unknown; no funding is credited
        assert realized_pnl(leg, entry, None) == Decimal("-0.25")


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_without_tasks(self, scheduler) -> None:
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_unwind(self, scheduler, port, clock) -> None:
        task = await scheduler.submit(_make_opportunity("BTCUSDT", clock.now + 3), _make_leg())

        await scheduler.shutdown()

        assert task.state is TaskState.DONE
        port.close_position.assert_awaited_once()
