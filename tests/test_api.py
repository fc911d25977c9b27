"""Tests for the control API endpoints."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from fundarb.api import create_app
from fundarb.exceptions import InvalidRiskLimits
from fundarb.models import (
    EntryLeg,
    ExecutionResult,
    ExecutionTask,
    FundingObservation,
    PositionSide,
    TaskState,
)
from fundarb.opportunity.classifier import ScenarioClassifier
from fundarb.opportunity.ranker import OpportunityRanker
from fundarb.orchestrator import OpportunityEngine
from fundarb.pnl.ledger import PositionLedger
from fundarb.risk.limits import RiskLimits
from fundarb.risk.monitor import RiskMonitor

NEXT_FUNDING = 1_700_028_800.0


def _make_opportunities():
    snapshots = {
        "binance": [
            FundingObservation("binance", "BTCUSDT", Decimal("-0.004"), 0.0, NEXT_FUNDING)
        ],
        "bybit": [FundingObservation("bybit", "BTCUSDT", Decimal("0.003"), 0.0, NEXT_FUNDING)],
    }
    return OpportunityRanker().rank(ScenarioClassifier().classify(snapshots, now=1.0))


def _make_task(task_id: str, state: TaskState, result: ExecutionResult | None = None):
    return ExecutionTask(
        id=task_id,
        opportunity=_make_opportunities()[0],
        entry_leg=EntryLeg(
            exchange="binance",
            side=PositionSide.LONG,
            margin=Decimal("50"),
            leverage=5,
            funding_rate=Decimal("-0.004"),
        ),
        funding_deadline=NEXT_FUNDING,
        state=state,
        result=result,
    )


@pytest.fixture
def engine() -> MagicMock:
    engine = MagicMock(spec=OpportunityEngine)
    engine.is_running = True
    engine.status.return_value = {"enabled": True, "daily_pnl": "0", "failures": {}}
    engine.best_opportunities.return_value = _make_opportunities()
    engine.opportunity_stats.return_value = OpportunityRanker.summarize(_make_opportunities())
    engine.force_scan = AsyncMock(return_value=True)
    engine.update_limits.return_value = RiskLimits()
    return engine


@pytest.fixture
def ledger() -> PositionLedger:
    return PositionLedger()


@pytest.fixture
def risk_monitor() -> RiskMonitor:
    return RiskMonitor(lambda: RiskLimits())


@pytest.fixture
def client(engine, ledger, risk_monitor) -> TestClient:
    app = create_app()
    app.state.engine = engine
    app.state.ledger = ledger
    app.state.risk_monitor = risk_monitor
    return TestClient(app)


class TestStatus:
    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "running": True}

    def test_status(self, client) -> None:
        response = client.get("/auto-trade/status")
        assert response.status_code == 200
        assert response.json()["enabled"] is True


class TestOpportunities:
    def test_lists_ranked_opportunities(self, client, engine) -> None:
        response = client.get("/auto-trade/opportunities", params={"limit": 5})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        opp = body["opportunities"][0]
        assert opp["symbol"] == "BTCUSDT"
        assert opp["scenario_id"] == 1
        assert opp["long_exchange"] == "binance"
        assert opp["expected_profit"] == "0.007"
        assert opp["expected_profit_pct"] == "0.7000%"
        assert opp["expected_profit_usd"] == "7.000"
        assert body["statistics"]["total_symbols"] == 1
        engine.best_opportunities.assert_called_once_with(5)

    def test_usd_profit_for_requested_size(self, client) -> None:
        response = client.get("/auto-trade/opportunities", params={"position_size": "250"})

        assert response.status_code == 200
        assert response.json()["opportunities"][0]["expected_profit_usd"] == "1.750"

    def test_non_positive_position_size_rejected(self, client) -> None:
        response = client.get("/auto-trade/opportunities", params={"position_size": "0"})
        assert response.status_code == 422

    def test_limit_out_of_range(self, client) -> None:
        assert client.get("/auto-trade/opportunities", params={"limit": 0}).status_code == 422
        assert client.get("/auto-trade/opportunities", params={"limit": 51}).status_code == 422


class TestPositions:
    @pytest.mark.asyncio
    async def test_active_and_completed(self, client, ledger) -> None:
        await ledger.record_start(_make_task("active-1", TaskState.WATCHING))
        done = _make_task(
            "done-1",
            TaskState.DONE,
            ExecutionResult(state=TaskState.DONE, reason="completed", realized_pnl=Decimal("2.5")),
        )
        await ledger.record_completion(done, Decimal("2.5"))

        body = client.get("/auto-trade/positions").json()

        assert [p["task_id"] for p in body["active_positions"]] == ["active-1"]
        assert body["active_positions"][0]["state"] == "watching"
        assert body["completed"][0]["task_id"] == "done-1"
        assert body["completed"][0]["realized_pnl"] == "2.5"
        assert body["daily_pnl"] == "2.5"


class TestControl:
    def test_start(self, client, engine) -> None:
        response = client.post("/auto-trade/start")
        assert response.json()["enabled"] is True
        engine.enable.assert_called_once()

    def test_stop(self, client, engine) -> None:
        response = client.post("/auto-trade/stop")
        assert response.json()["enabled"] is False
        engine.disable.assert_called_once()

    def test_force_scan(self, client, engine) -> None:
        response = client.post("/auto-trade/force-scan")
        assert response.status_code == 200
        assert response.json()["opportunities"] == 1

    def test_force_scan_in_progress(self, client, engine) -> None:
        engine.force_scan.return_value = False
        assert client.post("/auto-trade/force-scan").status_code == 409

    def test_update_limits(self, client, engine) -> None:
        response = client.patch("/auto-trade/limits", json={"max_open_positions": 5})

        assert response.status_code == 200
        update = engine.update_limits.call_args.args[0]
        assert update.as_dict() == {"max_open_positions": 5}

    def test_invalid_limits_rejected(self, client, engine) -> None:
        engine.update_limits.side_effect = InvalidRiskLimits("max_portfolio_risk <= 1")

        response = client.patch("/auto-trade/limits", json={"max_portfolio_risk": "1.5"})

        assert response.status_code == 422
        assert "max_portfolio_risk" in response.json()["error"]


class TestRiskAlerts:
    def test_list_and_acknowledge(self, client, risk_monitor) -> None:
        metrics = risk_monitor.calculate_metrics(
            [Decimal("200000")], Decimal("10000"), Decimal("0")
        )
        (alert,) = risk_monitor.check_alerts(metrics)

        alerts = client.get("/risk/alerts").json()
        assert [a["id"] for a in alerts] == [alert.id]
        assert alerts[0]["severity"] == "critical"

        response = client.post(f"/risk/alerts/{alert.id}/ack")
        assert response.status_code == 200
        assert client.get("/risk/alerts").json() == []

    def test_acknowledge_unknown(self, client) -> None:
        assert client.post("/risk/alerts/nope/ack").status_code == 404
