"""Opportunity engine -- wires the pipeline and runs the scan loop.

Each cycle:
  0. RESET: Zero daily P&L on a new UTC day
  1. GUARD: Emergency stop when the daily loss limit is breached
  2. SCAN: Fetch funding snapshots from every exchange concurrently
  3. CLASSIFY: Apply the five scenario rules to every exchange pair
  4. RANK: One best candidate per symbol, keep the broadcast list
  5. ADMIT: Size and risk-gate the top candidates, hand the first
     admissible one to the execution scheduler
  6. MONITOR: Portfolio risk metrics, liquidation distance and alerts

The loop never overlaps itself: a tick that finds the previous cycle still
running is skipped, not queued. Execution tasks run independently of the
loop, so a cycle never waits for a funding settlement.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections import Counter
from collections.abc import Callable
from decimal import Decimal

from fundarb.config import AppSettings, RiskLimitsUpdate
from fundarb.exchange.port import ExchangePort
from fundarb.execution.scheduler import ExecutionScheduler
from fundarb.execution.sizing import effective_leverage, entry_margin, select_entry_leg
from fundarb.logging import get_logger
from fundarb.models import ExecutionTask, Opportunity, TaskState
from fundarb.notify import Notifier, Priority
from fundarb.opportunity.classifier import ScenarioClassifier
from fundarb.opportunity.ranker import OpportunityRanker
from fundarb.pnl.ledger import PositionLedger
from fundarb.risk.gate import PortfolioState, RiskGate
from fundarb.risk.limits import RiskLimits
from fundarb.risk.monitor import AlertSeverity, PositionRisk, RiskMonitor

logger = get_logger(__name__)

_ERROR_BACKOFF_SECONDS = 5.0
_POSITION_STATES = (TaskState.FIRING, TaskState.UNWINDING)


class OpportunityEngine:
    """Scan-classify-rank-admit-execute loop and its control surface.

    Args:
        settings: Application-wide settings.
        exchange_port: Funding snapshots, balances and orders.
        classifier: Scenario classifier.
        ranker: Opportunity ranker.
        risk_gate: Pre-trade admission gate (owns the live risk limits).
        risk_monitor: Portfolio risk metrics and alerts.
        scheduler: Execution state machine runner.
        ledger: Shared active-task and daily P&L ledger.
        notifier: Operator notification channel.
        clock: Wall-clock source in Unix seconds.
    """

    def __init__(
        self,
        settings: AppSettings,
        exchange_port: ExchangePort,
        classifier: ScenarioClassifier,
        ranker: OpportunityRanker,
        risk_gate: RiskGate,
        risk_monitor: RiskMonitor,
        scheduler: ExecutionScheduler,
        ledger: PositionLedger,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._port = exchange_port
        self._classifier = classifier
        self._ranker = ranker
        self._risk_gate = risk_gate
        self._risk_monitor = risk_monitor
        self._scheduler = scheduler
        self._ledger = ledger
        self._notifier = notifier
        self._clock = clock

        self._enabled = settings.engine.enabled_on_start
        self._running = False
        self._cycle_lock = asyncio.Lock()
        self._best: list[Opportunity] = []
        self._emergency_stopped = False
        self._failures: Counter[str] = Counter()
        self._last_cycle_at: float | None = None
        self._last_portfolio_value = Decimal("0")
        self._halted_reason: str | None = None

        scheduler.set_position_left_open_handler(self._halt_automation)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run the scan loop until stop() is called."""
        logger.info(
            "engine_starting",
            exchanges=self._port.exchange_ids,
            enabled=self._enabled,
            scan_interval=self._settings.engine.scan_interval_seconds,
        )
        self._running = True
        try:
            await self._run_loop()
        finally:
            logger.info("engine_stopped")

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight execution tasks.

        In-flight tasks are not cancelled: an armed task still unwinds its
        position after the funding settlement.
        """
        logger.info("engine_stopping_gracefully")
        self._running = False
        await self._scheduler.shutdown()

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_cycle()
                await asyncio.sleep(self._settings.engine.scan_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("engine_loop_error", error=str(e), exc_info=True)
                await asyncio.sleep(_ERROR_BACKOFF_SECONDS)

    async def run_cycle(self, force: bool = False) -> bool:
        """Run one guarded cycle.

        Returns:
            False if the tick was skipped because a cycle was in flight.
        """
        if self._cycle_lock.locked():
            logger.debug("cycle_skipped_in_flight")
            return False
        async with self._cycle_lock:
            try:
                await self._cycle(force=force)
            except Exception as e:
                self._failures["cycle"] += 1
                logger.error("engine_cycle_error", error=str(e), exc_info=True)
            finally:
                self._last_cycle_at = self._clock()
        return True

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _cycle(self, force: bool = False) -> None:
        # 0. RESET
        await self._ledger.reset_if_new_day()

        # 1. GUARD
        limits = self._risk_gate.limits
        if self._ledger.should_emergency_stop(limits.max_daily_loss):
            if not self._emergency_stopped:
                self._emergency_stopped = True
                logger.critical(
                    "emergency_stop_triggered",
                    daily_pnl=str(self._ledger.daily_pnl),
                    max_daily_loss=str(limits.max_daily_loss),
                )
                await self._notifier.notify(
                    f"Emergency stop: daily P&L {self._ledger.daily_pnl:.2f} "
                    f"below -{limits.max_daily_loss}",
                    Priority.CRITICAL,
                )
            return
        if self._emergency_stopped:
            logger.info("emergency_stop_cleared", daily_pnl=str(self._ledger.daily_pnl))
            self._emergency_stopped = False

        if not self._enabled and not force:
            logger.debug("engine_disabled_skipping_cycle")
            return

        # 2. SCAN
        snapshots = await self._port.get_funding_snapshots(self._settings.engine.symbols)
        if len(snapshots) < 2:
            logger.warning("insufficient_exchanges", available=list(snapshots))
            self._best = []
            return

        # 3. CLASSIFY
        candidates = self._classifier.classify(snapshots)

        # 4. RANK
        self._best = self._ranker.rank(candidates, self._settings.engine.broadcast_limit)
        if self._best:
            top = self._best[0]
            logger.info(
                "opportunities_ranked",
                candidates=len(candidates),
                symbols=len(self._best),
                top_symbol=top.symbol,
                top_scenario=top.scenario_id,
                top_profit=str(top.expected_profit),
            )

        # 5. ADMIT & EXECUTE
        if self._enabled:
            await self._admit_and_submit(self._best[: self._settings.engine.execution_limit])

        # 6. MONITOR
        await self._monitor_risk()

    async def _admit_and_submit(self, candidates: list[Opportunity]) -> None:
        """Hand the first admissible candidate to the scheduler."""
        if not candidates:
            return
        try:
            portfolio_value = await self._port.fetch_portfolio_value()
        except Exception as e:
            self._failures["balance"] += 1
            logger.error("portfolio_value_failed", error=str(e))
            return
        self._last_portfolio_value = portfolio_value

        engine = self._settings.engine
        limits = self._risk_gate.limits
        leverage = effective_leverage(engine.target_leverage, limits.max_leverage)
        portfolio = PortfolioState(
            open_symbols=self._ledger.active_symbols(),
            portfolio_value=portfolio_value,
        )
        by_scenario = self._ledger.active_count_by_scenario()
        now = self._clock()

        for opp in candidates:
            if self._scheduler.has_task(opp.symbol):
                continue

            # Same window the scheduler enforces at ARMED
            time_to_funding = opp.funding_deadline - now
            if not 0 < time_to_funding <= engine.admission_window_seconds:
                logger.debug(
                    "candidate_outside_admission_window",
                    symbol=opp.symbol,
                    time_to_funding=round(time_to_funding, 3),
                )
                continue

            if by_scenario.get(opp.scenario_id, 0) >= engine.max_positions_per_scenario:
                logger.info(
                    "candidate_skipped_scenario_full",
                    symbol=opp.symbol,
                    scenario=opp.scenario_id,
                    active=by_scenario[opp.scenario_id],
                )
                continue

            leg = select_entry_leg(opp, Decimal("0"), leverage)
            try:
                free = await self._port.fetch_available_margin(leg.exchange)
            except Exception as e:
                self._failures["balance"] += 1
                logger.warning("available_margin_failed", exchange=leg.exchange, error=str(e))
                continue
            leg = dataclasses.replace(
                leg,
                margin=entry_margin(free, engine.entry_margin_fraction, engine.max_margin_per_trade),
            )

            decision = self._risk_gate.admit(opp, leg.notional, portfolio, limits)
            if not decision.allowed:
                logger.info(
                    "candidate_rejected_by_risk_gate",
                    symbol=opp.symbol,
                    scenario=opp.scenario_id,
                    reasons=decision.reasons,
                )
                continue

            task = await self._scheduler.submit(opp, leg)
            if task is None:
                self._failures["submit_rejected"] += 1
            break

    async def _monitor_risk(self) -> None:
        try:
            exposures = [t.entry_leg.notional for t in self._ledger.active_positions]
            metrics = self._risk_monitor.calculate_metrics(
                exposures, self._last_portfolio_value, self._ledger.daily_pnl
            )
            alerts = self._risk_monitor.check_alerts(metrics)
            alerts += self._risk_monitor.check_position_alerts(await self._position_risks())
            for alert in alerts:
                if alert.severity is AlertSeverity.CRITICAL:
                    await self._notifier.notify(alert.message, Priority.CRITICAL)
        except Exception as e:
            self._failures["risk_monitor"] += 1
            logger.error("risk_monitor_failed", error=str(e))

    async def _position_risks(self) -> list[PositionRisk]:
        """Liquidation distance of every task currently holding a position."""
        risks: list[PositionRisk] = []
        for task in self._ledger.active_positions:
            if task.state not in _POSITION_STATES:
                continue
            leg = task.entry_leg
            try:
                position = await self._port.get_open_position(task.symbol, leg.exchange)
            except Exception as e:
                self._failures["position_query"] += 1
                logger.warning(
                    "position_query_failed",
                    symbol=task.symbol,
                    exchange=leg.exchange,
                    error=str(e),
                )
                continue
            if position is not None:
                risks.append(self._risk_monitor.position_risk(position, leg.leverage))
        return risks

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    def enable(self) -> None:
        """Resume admissions. Clears a halt left by a failed unwind."""
        self._enabled = True
        if self._halted_reason is not None:
            logger.warning("automation_halt_cleared", reason=self._halted_reason)
            self._halted_reason = None
        logger.info("auto_trade_enabled")

    def _halt_automation(self, task: ExecutionTask) -> None:
        self._enabled = False
        self._halted_reason = f"unwind_failed:{task.symbol}@{task.entry_leg.exchange}"
        logger.critical(
            "automation_halted",
            reason=self._halted_reason,
            note="Close the position manually, then re-enable",
        )

    def disable(self) -> None:
        """Stop admitting new opportunities. In-flight tasks run to completion."""
        self._enabled = False
        logger.info("auto_trade_disabled")

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def emergency_stopped(self) -> bool:
        return self._emergency_stopped

    def update_limits(self, update: RiskLimitsUpdate) -> RiskLimits:
        """Apply a partial risk limits update.

        Raises:
            InvalidRiskLimits: If the merged limits are invalid. The
                previous limits stay in force.
        """
        return self._risk_gate.update_limits(update)

    async def force_scan(self) -> bool:
        """Run a cycle now, scanning even when auto trade is disabled.

        Returns:
            False if a cycle was already in flight.
        """
        logger.info("force_scan_requested")
        return await self.run_cycle(force=True)

    def best_opportunities(self, limit: int | None = None) -> list[Opportunity]:
        """Ranked opportunities from the last completed scan."""
        if limit is None:
            limit = self._settings.engine.execution_limit
        if limit <= 0:
            return []
        return self._best[:limit]

    def opportunity_stats(self) -> dict:
        return self._ranker.summarize(self._best)

    def status(self) -> dict:
        """Engine status for the control API. Never raises."""
        try:
            limits = self._risk_gate.limits
            failures = dict(self._failures)
            for exchange_id, count in self._port.failure_counts.items():
                failures[f"collector:{exchange_id}"] = count
            by_scenario = self._ledger.active_count_by_scenario()
            return {
                "enabled": self._enabled,
                "running": self._running,
                "active_tasks": len(self._ledger.active_positions),
                "daily_pnl": str(self._ledger.daily_pnl),
                "last_reset_date": self._ledger.last_reset_date.isoformat(),
                "emergency_stopped": self._emergency_stopped,
                "halted_reason": self._halted_reason,
                "scenarios": [
                    {
                        "id": rule.id,
                        "name": rule.name,
                        "risk_level": rule.risk_level.value,
                        "min_profit_threshold": str(rule.min_profit_threshold),
                        "active_positions": by_scenario.get(rule.id, 0),
                    }
                    for rule in self._classifier.config.rules
                ],
                "failures": failures,
                "last_cycle_at": self._last_cycle_at,
                "risk_limits": limits.model_dump(mode="json"),
            }
        except Exception as e:
            logger.error("status_failed", error=str(e))
            return {"enabled": self._enabled, "error": str(e)}
