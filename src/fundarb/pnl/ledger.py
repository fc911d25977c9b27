"""Process-wide position and daily P&L ledger.

Backs the emergency stop: daily_pnl accumulates realized P&L from completed
execution tasks and resets once per UTC calendar day. All mutations run under
a single asyncio.Lock because several execution tasks (one per symbol) finish
concurrently.

Nothing here is persisted; the ledger only serves same-process decisions.
"""

import asyncio
import time
from collections import Counter, deque
from collections.abc import Callable
from datetime import date, datetime, timezone
from decimal import Decimal

from fundarb.logging import get_logger
from fundarb.models import ExecutionTask

logger = get_logger(__name__)


def _utc_date(ts: float) -> date:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


class PositionLedger:
    """Tracks active execution tasks, daily realized P&L and day rollover.

    Args:
        history_size: Number of completed tasks kept for status queries.
        clock: Source of "now" as Unix seconds (injectable for tests).
    """

    def __init__(
        self,
        history_size: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._lock = asyncio.Lock()
        self._active: dict[str, ExecutionTask] = {}
        self._completed: deque[ExecutionTask] = deque(maxlen=history_size)
        self._daily_pnl = Decimal("0")
        self._last_reset_date = _utc_date(clock())

    async def record_start(self, task: ExecutionTask) -> None:
        """Register a newly armed task as active."""
        async with self._lock:
            self._active[task.id] = task
        logger.debug("ledger_task_started", task_id=task.id, symbol=task.symbol)

    async def record_completion(self, task: ExecutionTask, realized_pnl: Decimal) -> None:
        """Remove a terminal task from the active set and book its P&L."""
        async with self._lock:
            self._active.pop(task.id, None)
            self._daily_pnl += realized_pnl
            self._completed.append(task)
            daily = self._daily_pnl
        logger.info(
            "ledger_task_completed",
            task_id=task.id,
            symbol=task.symbol,
            state=task.state.value,
            realized_pnl=str(realized_pnl),
            daily_pnl=str(daily),
        )

    async def reset_if_new_day(self, now: float | None = None) -> bool:
        """Zero daily P&L when the UTC calendar date has changed.

        Returns:
            True if a reset happened.
        """
        today = _utc_date(self._clock() if now is None else now)
        async with self._lock:
            if today == self._last_reset_date:
                return False
            previous = self._daily_pnl
            self._daily_pnl = Decimal("0")
            self._last_reset_date = today
        logger.info("daily_pnl_reset", date=today.isoformat(), previous_pnl=str(previous))
        return True

    def should_emergency_stop(self, max_daily_loss: Decimal) -> bool:
        """True iff realized daily P&L is a loss larger than max_daily_loss.

        Profits never trigger the stop, whatever their size.
        """
        return self._daily_pnl < -max_daily_loss

    def has_active(self, symbol: str) -> bool:
        return any(t.symbol == symbol for t in self._active.values())

    def active_symbols(self) -> list[str]:
        return [t.symbol for t in self._active.values()]

    def active_count_by_scenario(self) -> dict[int, int]:
        """Number of active tasks per scenario id."""
        return dict(Counter(t.scenario_id for t in self._active.values()))

    @property
    def active_positions(self) -> list[ExecutionTask]:
        return list(self._active.values())

    @property
    def completed(self) -> list[ExecutionTask]:
        return list(self._completed)

    @property
    def daily_pnl(self) -> Decimal:
        return self._daily_pnl

    @property
    def last_reset_date(self) -> date:
        return self._last_reset_date

    def snapshot(self) -> dict:
        """Read-only view for status queries."""
        return {
            "active_positions": [
                {
                    "task_id": t.id,
                    "symbol": t.symbol,
                    "scenario": t.scenario_id,
                    "exchange": t.entry_leg.exchange,
                    "side": t.entry_leg.side.value,
                    "state": t.state.value,
                    "funding_deadline": t.funding_deadline,
                }
                for t in self._active.values()
            ],
            "completed_count": len(self._completed),
            "daily_pnl": str(self._daily_pnl),
            "last_reset_date": self._last_reset_date.isoformat(),
        }
