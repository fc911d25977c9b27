"""Funding-time-aligned execution scheduler.

Each accepted opportunity becomes an ExecutionTask driven through:

  IDLE -> ARMED -> WATCHING -> FIRING -> UNWINDING -> DONE
  (any non-terminal state may move to ABORTED)

ARMED:     accepted only if 0 < deadline - now <= admission window
WATCHING:  cooperative tick; fires once within fire_lead of the deadline,
           aborts as soon as the deadline has passed (never fires late)
FIRING:    one directional market order on the entry leg
UNWINDING: after deadline + unwind_delay, close the position reduce-only

Tasks run as independent asyncio tasks so different symbols proceed
concurrently. The only state they share is the PositionLedger.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from uuid import uuid4

import structlog

from fundarb.config import EngineSettings
from fundarb.exceptions import DeadlineMissed
from fundarb.exchange.port import ExchangePort
from fundarb.logging import get_logger
from fundarb.models import (
    EntryLeg,
    ExecutionResult,
    ExecutionTask,
    OrderHandle,
    Opportunity,
    PositionSide,
    TaskState,
)
from fundarb.notify import Notifier, Priority
from fundarb.pnl.ledger import PositionLedger

logger = get_logger(__name__)

OUTSIDE_ADMISSION_WINDOW = "outside_admission_window"
DEADLINE_MISSED = "deadline_missed"
ENTRY_FAILED = "entry_failed"
UNWIND_FAILED = "unwind_failed"
COMPLETED = "completed"
ALREADY_FLAT = "position_already_closed"


def realized_pnl(
    leg: EntryLeg,
    entry: OrderHandle,
    exit_fill: OrderHandle | None,
) -> Decimal:
    """Realized P&L of a completed round trip.

    price P&L on the closed quantity, minus entry and exit fees, plus the
    funding collected by the held side (entry notional * |rate|).

    Without an exit fill the position was closed outside the engine and
    neither its exit price nor the funding it received is known, so only
    the entry fee is booked.
    """
    if exit_fill is None:
        return -entry.fee

    notional = entry.filled_qty * entry.filled_price
    if notional <= 0:
        notional = leg.notional
    funding = notional * abs(leg.funding_rate)

    qty = min(entry.filled_qty, exit_fill.filled_qty)
    if leg.side is PositionSide.LONG:
        price_pnl = (exit_fill.filled_price - entry.filled_price) * qty
    else:
        price_pnl = (entry.filled_price - exit_fill.filled_price) * qty
    return price_pnl - entry.fee - exit_fill.fee + funding


class ExecutionScheduler:
    """Runs one state machine per accepted opportunity.

    Args:
        exchange_port: Order placement and position queries.
        ledger: Shared active-task and daily P&L ledger.
        notifier: Operator notification channel.
        settings: Window, tick and delay timings.
        clock: Source of "now" as Unix seconds (injectable for tests).
        sleep: Awaitable sleep (injectable for tests).
    """

    def __init__(
        self,
        exchange_port: ExchangePort,
        ledger: PositionLedger,
        notifier: Notifier,
        settings: EngineSettings | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._port = exchange_port
        self._ledger = ledger
        self._notifier = notifier
        self._settings = settings or EngineSettings()
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, ExecutionTask] = {}
        self._reserved: set[str] = set()
        self._running: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._on_position_left_open: Callable[[ExecutionTask], None] | None = None

    def set_position_left_open_handler(
        self, handler: Callable[[ExecutionTask], None]
    ) -> None:
        """Register the callback invoked when a task ends with a position left open."""
        self._on_position_left_open = handler

    @property
    def in_flight(self) -> list[ExecutionTask]:
        return list(self._tasks.values())

    def has_task(self, symbol: str) -> bool:
        """True if a non-terminal task exists (or is being admitted) for symbol."""
        task = self._tasks.get(symbol)
        if task is not None and not task.state.is_terminal:
            return True
        return symbol in self._reserved

    async def submit(
        self, opportunity: Opportunity, entry_leg: EntryLeg
    ) -> ExecutionTask | None:
        """Arm a task for an opportunity, or reject it.

        Rejected (returns None) when a non-terminal task already exists for
        the symbol, when either leg's exchange reports a live position, or
        when the position query fails. A rejection never replaces the
        existing task.
        """
        symbol = opportunity.symbol
        if self.has_task(symbol):
            logger.info("submission_rejected", symbol=symbol, reason="task_in_flight")
            return None

        self._reserved.add(symbol)
        try:
            reason = await self._position_guard(opportunity)
            if reason is not None:
                logger.info("submission_rejected", symbol=symbol, reason=reason)
                return None

            task = ExecutionTask(
                id=uuid4().hex[:12],
                opportunity=opportunity,
                entry_leg=entry_leg,
                funding_deadline=opportunity.funding_deadline,
                state=TaskState.ARMED,
                started_at=self._clock(),
            )
            self._tasks[symbol] = task
        finally:
            self._reserved.discard(symbol)

        await self._ledger.record_start(task)
        logger.info(
            "task_armed",
            task_id=task.id,
            symbol=symbol,
            scenario=opportunity.scenario_id,
            exchange=entry_leg.exchange,
            side=entry_leg.side.value,
            margin=str(entry_leg.margin),
            leverage=entry_leg.leverage,
            seconds_to_funding=round(task.funding_deadline - self._clock(), 3),
        )

        runner = asyncio.create_task(self._run(task), name=f"execution-{symbol}")
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)
        return task

    async def shutdown(self) -> None:
        """Wait for in-flight tasks to reach a terminal state."""
        if not self._running:
            return
        logger.info("scheduler_waiting_for_tasks", count=len(self._running))
        await asyncio.gather(*self._running, return_exceptions=True)

    async def _position_guard(self, opportunity: Opportunity) -> str | None:
        exchanges = dict.fromkeys((opportunity.long_exchange, opportunity.short_exchange))
        for exchange_id in exchanges:
            try:
                position = await self._port.get_open_position(opportunity.symbol, exchange_id)
            except Exception as e:
                logger.warning(
                    "position_query_failed",
                    symbol=opportunity.symbol,
                    exchange=exchange_id,
                    error=str(e),
                )
                return "position_query_failed"
            if position is not None:
                return f"existing_position_on_{exchange_id}"
        return None

    async def _run(self, task: ExecutionTask) -> None:
        with structlog.contextvars.bound_contextvars(task_id=task.id, symbol=task.symbol):
            try:
                result = await self._drive(task)
            except Exception as e:
                logger.error("task_unexpected_error", error=str(e), exc_info=True)
                result = ExecutionResult(
                    state=TaskState.ABORTED,
                    reason=f"unexpected_error: {e}",
                    position_left_open=task.state is TaskState.UNWINDING,
                )
            await self._finish(task, result)

    async def _drive(self, task: ExecutionTask) -> ExecutionResult:
        settings = self._settings
        remaining = task.funding_deadline - self._clock()
        if remaining <= 0:
            return ExecutionResult(state=TaskState.ABORTED, reason=DEADLINE_MISSED)
        if remaining > settings.admission_window_seconds:
            return ExecutionResult(state=TaskState.ABORTED, reason=OUTSIDE_ADMISSION_WINDOW)

        task.state = TaskState.WATCHING
        try:
            await self._watch(task)
        except DeadlineMissed as e:
            logger.warning("funding_deadline_missed", error=str(e))
            return ExecutionResult(state=TaskState.ABORTED, reason=DEADLINE_MISSED)

        task.state = TaskState.FIRING
        leg = task.entry_leg
        try:
            entry = await self._port.place_directional_order(
                leg.exchange, task.symbol, leg.side, leg.margin, leg.leverage
            )
        except Exception as e:
            logger.error("entry_order_failed", exchange=leg.exchange, error=str(e))
            return ExecutionResult(state=TaskState.ABORTED, reason=ENTRY_FAILED)

        logger.info(
            "entry_filled",
            exchange=leg.exchange,
            side=leg.side.value,
            qty=str(entry.filled_qty),
            price=str(entry.filled_price),
        )

        wait = task.funding_deadline + settings.unwind_delay_seconds - self._clock()
        if wait > 0:
            await self._sleep(wait)

        task.state = TaskState.UNWINDING
        try:
            exit_fill = await self._port.close_position(leg.exchange, task.symbol)
        except Exception as e:
            logger.critical("unwind_failed", exchange=leg.exchange, error=str(e))
            return ExecutionResult(
                state=TaskState.ABORTED,
                reason=UNWIND_FAILED,
                realized_pnl=-entry.fee,
                entry=entry,
                position_left_open=True,
            )

        if exit_fill is None:
            logger.warning("position_closed_externally", exchange=leg.exchange)
        return ExecutionResult(
            state=TaskState.DONE,
            reason=COMPLETED if exit_fill is not None else ALREADY_FLAT,
            realized_pnl=realized_pnl(leg, entry, exit_fill),
            entry=entry,
            exit=exit_fill,
        )

    async def _watch(self, task: ExecutionTask) -> None:
        """Sleep until the fire point, one tick at a time.

        Raises:
            DeadlineMissed: If the deadline passed before the fire point
                was observed.
        """
        settings = self._settings
        while True:
            remaining = task.funding_deadline - self._clock()
            if remaining <= 0:
                raise DeadlineMissed(f"deadline passed {-remaining:.3f}s ago")
            if remaining <= settings.fire_lead_seconds:
                return
            logger.debug("watching_funding", seconds_to_funding=round(remaining, 3))
            await self._sleep(
                min(settings.watch_tick_seconds, remaining - settings.fire_lead_seconds)
            )

    async def _finish(self, task: ExecutionTask, result: ExecutionResult) -> None:
        dropped_at_window = task.state is TaskState.ARMED
        task.result = result
        task.state = result.state
        task.finished_at = self._clock()

        await self._ledger.record_completion(task, result.realized_pnl)
        if self._tasks.get(task.symbol) is task:
            del self._tasks[task.symbol]

        logger.info(
            "task_finished",
            state=result.state.value,
            reason=result.reason,
            realized_pnl=str(result.realized_pnl),
        )
        if dropped_at_window:
            return

        if result.state is TaskState.DONE:
            message = (
                f"{task.symbol} S{task.scenario_id} done on {task.entry_leg.exchange}: "
                f"pnl {result.realized_pnl:.4f}"
            )
            priority = Priority.INFO
            if result.reason == ALREADY_FLAT:
                message += " (position closed externally, exit unknown)"
                priority = Priority.WARNING
        else:
            message = (
                f"{task.symbol} S{task.scenario_id} aborted on {task.entry_leg.exchange}: "
                f"{result.reason}"
            )
            priority = Priority.WARNING
            if result.position_left_open:
                message += f" ({task.entry_leg.side.value} position left open)"
                priority = Priority.CRITICAL
        await self._notifier.notify(message, priority)

        if result.position_left_open and self._on_position_left_open is not None:
            self._on_position_left_open(task)
