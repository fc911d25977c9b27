"""JSON endpoints for engine status, opportunities and control."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fundarb.config import RiskLimitsUpdate
from fundarb.exceptions import InvalidRiskLimits
from fundarb.models import Opportunity
from fundarb.opportunity.profit import format_profit_pct, usd_profit

log = structlog.get_logger(__name__)

router = APIRouter()


class LimitsPatch(BaseModel):
    """Request body for PATCH /auto-trade/limits. Omitted fields are unchanged."""

    max_leverage: Decimal | None = None
    max_position_size: Decimal | None = None
    max_portfolio_risk: Decimal | None = None
    max_daily_loss: Decimal | None = None
    max_open_positions: int | None = None
    correlation_limit: Decimal | None = None


def _decimal_to_str(obj: Any) -> Any:
    """Recursively convert Decimal values to strings for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, dict):
        return {k: _decimal_to_str(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_decimal_to_str(item) for item in obj]
    return obj


def _opportunity_json(opp: Opportunity, position_size: Decimal) -> dict:
    return {
        "symbol": opp.symbol,
        "scenario_id": opp.scenario_id,
        "scenario": opp.rule.name,
        "risk_level": opp.rule.risk_level.value,
        "direction": opp.direction.value,
        "long_exchange": opp.long_exchange,
        "short_exchange": opp.short_exchange,
        "long_funding_rate": str(opp.long_funding_rate),
        "short_funding_rate": str(opp.short_funding_rate),
        "long_funding_time": opp.long_next_funding_time,
        "short_funding_time": opp.short_next_funding_time,
        "expected_profit": str(opp.expected_profit),
        "expected_profit_pct": format_profit_pct(opp.expected_profit),
        "expected_profit_usd": str(usd_profit(opp.expected_profit, position_size)),
        "weighted_profit": str(opp.weighted_profit),
        "timestamp": opp.discovered_at,
    }


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    engine = request.app.state.engine
    return JSONResponse(content={"status": "ok", "running": engine.is_running})


@router.get("/auto-trade/status")
async def get_status(request: Request) -> JSONResponse:
    engine = request.app.state.engine
    return JSONResponse(content=_decimal_to_str(engine.status()))


@router.get("/auto-trade/opportunities")
async def get_opportunities(
    request: Request,
    limit: int = Query(default=15, ge=1, le=50),
    position_size: Decimal = Query(default=Decimal("1000"), gt=0),
) -> JSONResponse:
    """Best ranked opportunities from the last scan, with summary statistics.

    USD profit is quoted for a notional of position_size.
    """
    engine = request.app.state.engine
    best = engine.best_opportunities(limit)
    return JSONResponse(content={
        "opportunities": [_opportunity_json(o, position_size) for o in best],
        "total": len(best),
        "statistics": _decimal_to_str(engine.opportunity_stats()),
    })


@router.get("/auto-trade/positions")
async def get_positions(request: Request) -> JSONResponse:
    """Active execution tasks and the recently completed ones."""
    ledger = request.app.state.ledger
    snapshot = ledger.snapshot()
    snapshot["completed"] = [
        {
            "task_id": t.id,
            "symbol": t.symbol,
            "scenario": t.scenario_id,
            "exchange": t.entry_leg.exchange,
            "state": t.state.value,
            "reason": t.result.reason if t.result else None,
            "realized_pnl": str(t.result.realized_pnl) if t.result else "0",
            "position_left_open": t.result.position_left_open if t.result else False,
            "finished_at": t.finished_at,
        }
        for t in reversed(ledger.completed[-50:])
    ]
    return JSONResponse(content=snapshot)


@router.post("/auto-trade/start")
async def start_auto_trade(request: Request) -> JSONResponse:
    engine = request.app.state.engine
    engine.enable()
    log.info("auto_trade_started_via_api")
    return JSONResponse(content={"message": "Auto trading started", "enabled": True})


@router.post("/auto-trade/stop")
async def stop_auto_trade(request: Request) -> JSONResponse:
    engine = request.app.state.engine
    engine.disable()
    log.info("auto_trade_stopped_via_api")
    return JSONResponse(content={"message": "Auto trading stopped", "enabled": False})


@router.post("/auto-trade/force-scan")
async def force_scan(request: Request) -> JSONResponse:
    engine = request.app.state.engine
    ran = await engine.force_scan()
    if not ran:
        return JSONResponse(
            status_code=409,
            content={"message": "A scan is already in progress"},
        )
    return JSONResponse(content={
        "message": "Force scan completed",
        "opportunities": len(engine.best_opportunities()),
    })


@router.patch("/auto-trade/limits")
async def update_limits(request: Request, body: LimitsPatch) -> JSONResponse:
    """Apply a partial risk limits update. Invalid merged limits return 422."""
    engine = request.app.state.engine
    update = RiskLimitsUpdate(**body.model_dump())
    try:
        limits = engine.update_limits(update)
    except InvalidRiskLimits as e:
        log.warning("risk_limits_update_rejected", error=str(e))
        return JSONResponse(status_code=422, content={"error": str(e)})
    return JSONResponse(content=limits.model_dump(mode="json"))


@router.get("/risk/alerts")
async def get_risk_alerts(request: Request) -> JSONResponse:
    risk_monitor = request.app.state.risk_monitor
    alerts = risk_monitor.get_active_alerts()
    return JSONResponse(content=[
        {
            "id": a.id,
            "type": a.type.value,
            "severity": a.severity.value,
            "subject": a.subject,
            "message": a.message,
            "recommended_actions": a.recommended_actions,
            "timestamp": a.timestamp,
        }
        for a in alerts
    ])


@router.post("/risk/alerts/{alert_id}/ack")
async def acknowledge_alert(request: Request, alert_id: str) -> JSONResponse:
    risk_monitor = request.app.state.risk_monitor
    if not risk_monitor.acknowledge(alert_id):
        return JSONResponse(status_code=404, content={"error": "Unknown alert"})
    return JSONResponse(content={"id": alert_id, "acknowledged": True})
