"""Entry point for the funding opportunity engine.

Wires all components together, optionally serves the FastAPI control API,
and starts the engine loop. When the API is enabled (default), the engine
and the API share a single asyncio event loop via uvicorn's programmatic
API and FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown: the scan loop stops and
in-flight execution tasks are allowed to unwind.

Component wiring order (in _build_components):
1. ExchangePort (one CcxtExchangeAdapter per enabled exchange)
2. Notifier (Telegram or log-only)
3. ScenarioClassifier and OpportunityRanker
4. RiskGate and RiskMonitor (shared live limits)
5. PositionLedger
6. ExecutionScheduler
7. OpportunityEngine
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from fundarb.config import AppSettings
from fundarb.exchange.ccxt_adapter import CcxtExchangeAdapter
from fundarb.exchange.port import ExchangePort
from fundarb.execution.scheduler import ExecutionScheduler
from fundarb.logging import get_logger, setup_logging
from fundarb.notify import build_notifier
from fundarb.opportunity.classifier import ScenarioClassifier
from fundarb.opportunity.ranker import OpportunityRanker
from fundarb.opportunity.rules import ScenarioConfig
from fundarb.orchestrator import OpportunityEngine
from fundarb.pnl.ledger import PositionLedger
from fundarb.risk.gate import RiskGate
from fundarb.risk.limits import RiskLimits
from fundarb.risk.monitor import RiskMonitor


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all engine components from settings.

    Note: Does NOT connect to exchanges -- that happens in the lifespan
    (API mode) or run() (headless mode).
    """
    logger = get_logger("fundarb.main")

    adapters = []
    for exchange_id in settings.exchanges.enabled:
        credentials = settings.exchanges.credentials_for(exchange_id)
        if not credentials.api_key.get_secret_value():
            logger.warning(
                "no_api_keys_configured",
                exchange=exchange_id,
                note="Funding rates will work. Balances and orders will fail.",
            )
        adapters.append(CcxtExchangeAdapter(exchange_id, credentials))
    exchange_port = ExchangePort(adapters)

    notifier = build_notifier(settings.notify)

    classifier = ScenarioClassifier(ScenarioConfig.from_settings(settings.scenario))
    ranker = OpportunityRanker()

    risk_gate = RiskGate(RiskLimits.from_settings(settings.risk))
    risk_monitor = RiskMonitor(lambda: risk_gate.limits)

    ledger = PositionLedger(history_size=settings.engine.completed_history_size)

    scheduler = ExecutionScheduler(
        exchange_port=exchange_port,
        ledger=ledger,
        notifier=notifier,
        settings=settings.engine,
    )

    engine = OpportunityEngine(
        settings=settings,
        exchange_port=exchange_port,
        classifier=classifier,
        ranker=ranker,
        risk_gate=risk_gate,
        risk_monitor=risk_monitor,
        scheduler=scheduler,
        ledger=ledger,
        notifier=notifier,
    )

    return {
        "exchange_port": exchange_port,
        "notifier": notifier,
        "risk_monitor": risk_monitor,
        "ledger": ledger,
        "scheduler": scheduler,
        "engine": engine,
    }


def _setup_signal_handlers(engine: OpportunityEngine) -> None:
    """Register SIGINT/SIGTERM for graceful stop.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("fundarb.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        asyncio.create_task(engine.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage engine component lifecycle within the FastAPI application.

    On startup: stores components on app.state, connects to exchanges,
    starts the engine as a background task.

    On shutdown: stops the engine (waiting for in-flight tasks), cancels the
    loop task, closes exchanges and the notifier.
    """
    logger = get_logger("fundarb.main")
    components = app.state.components

    app.state.engine = components["engine"]
    app.state.ledger = components["ledger"]
    app.state.risk_monitor = components["risk_monitor"]

    await components["exchange_port"].connect_all()

    engine_task = asyncio.create_task(components["engine"].start())
    logger.info("lifespan_started", exchanges=components["exchange_port"].exchange_ids)

    yield

    await components["engine"].stop()

    engine_task.cancel()
    try:
        await engine_task
    except asyncio.CancelledError:
        pass

    await components["exchange_port"].close_all()
    await components["notifier"].close()
    logger.info("funding_opportunity_engine_stopped")


async def run() -> None:
    """Run the engine, with or without the control API.

    When the API is enabled (API_ENABLED=true, the default), uvicorn owns
    the event loop and its own signal handling; the lifespan drives the
    engine. Otherwise the engine runs headless with its own signal handlers.
    """
    settings = AppSettings()

    setup_logging(settings.log_level)
    logger = get_logger("fundarb.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from fundarb.api.app import create_app

        app = create_app(lifespan=lifespan)
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        _setup_signal_handlers(components["engine"])

        logger.info(
            "starting_headless",
            exchanges=settings.exchanges.enabled,
            scan_interval=settings.engine.scan_interval_seconds,
        )

        try:
            await components["exchange_port"].connect_all()
            await components["engine"].start()
        finally:
            await components["exchange_port"].close_all()
            await components["notifier"].close()
            logger.info("funding_opportunity_engine_stopped")


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
