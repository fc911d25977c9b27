"""Portfolio risk metrics and alerting.

Read-only path, separate from admission: computes exposure, leverage, a
simplified VaR and a composite risk score each cycle, and raises alerts when
leverage or daily loss approach their limits, or an open position drifts
close to its liquidation price.

  VaR95       = total_exposure * 2% daily volatility * 1.645
  risk_score  = 0.4 * leverage_score + 0.3 * exposure_score + 0.3 * drawdown_score

Liquidation is estimated for isolated margin without maintenance margin:
entry * (1 - 1/leverage) for a long, entry * (1 + 1/leverage) for a short.
"""

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from fundarb.logging import get_logger
from fundarb.models import ExchangePosition, PositionSide
from fundarb.risk.limits import RiskLimits

logger = get_logger(__name__)

_DAILY_VOLATILITY = Decimal("0.02")
_Z_95 = Decimal("1.645")
_MAX_REASONABLE_EXPOSURE = Decimal("5")  # multiples of portfolio value
_WARN_RATIO = Decimal("0.8")
_LIQUIDATION_WARN_DISTANCE = Decimal("0.1")
_LIQUIDATION_CRITICAL_DISTANCE = Decimal("0.05")
_ALERT_HISTORY = 500


class AlertType(str, Enum):
    LEVERAGE = "leverage"
    DRAWDOWN = "drawdown"
    LIQUIDATION = "liquidation"


class AlertSeverity(str, Enum):
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RiskMetrics:
    """Point-in-time portfolio risk snapshot."""

    current_leverage: Decimal
    portfolio_value: Decimal
    total_exposure: Decimal
    daily_pnl: Decimal
    var95: Decimal
    max_drawdown: Decimal
    risk_score: Decimal


@dataclass
class RiskAlert:
    """An alert raised by the monitor, kept until acknowledged."""

    type: AlertType
    severity: AlertSeverity
    message: str
    recommended_actions: list[str]
    subject: str = "portfolio"
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    timestamp: float = field(default_factory=time.time)
    acknowledged: bool = False


@dataclass
class PositionRisk:
    """Estimated liquidation distance of one open position."""

    exchange: str
    symbol: str
    side: PositionSide
    notional: Decimal
    leverage: int
    liquidation_price: Decimal
    distance_to_liquidation: Decimal

    @property
    def subject(self) -> str:
        return f"{self.symbol}@{self.exchange}"


class RiskMonitor:
    """Computes risk metrics and tracks alerts.

    Args:
        limits_provider: Callable returning the current RiskLimits, so
            runtime limit updates are picked up without rewiring.
    """

    def __init__(self, limits_provider: Callable[[], RiskLimits]) -> None:
        self._limits_provider = limits_provider
        self._alerts: deque[RiskAlert] = deque(maxlen=_ALERT_HISTORY)

    def calculate_metrics(
        self,
        exposures: list[Decimal],
        portfolio_value: Decimal,
        daily_pnl: Decimal,
    ) -> RiskMetrics:
        """Compute leverage, VaR and risk score for the current book.

        Args:
            exposures: Absolute notional of each open position.
            portfolio_value: Account equity in quote currency.
            daily_pnl: Realized P&L for the current day.
        """
        limits = self._limits_provider()
        total_exposure = sum((abs(e) for e in exposures), Decimal("0"))
        leverage = total_exposure / portfolio_value if portfolio_value > 0 else Decimal("0")
        var95 = total_exposure * _DAILY_VOLATILITY * _Z_95

        leverage_score = min(leverage / limits.max_leverage, Decimal("1"))
        if portfolio_value > 0:
            exposure_score = min(
                total_exposure / (portfolio_value * _MAX_REASONABLE_EXPOSURE),
                Decimal("1"),
            )
        else:
            exposure_score = Decimal("1") if total_exposure > 0 else Decimal("0")
        drawdown = abs(min(daily_pnl, Decimal("0")))
        drawdown_score = drawdown / limits.max_daily_loss

        risk_score = (
            leverage_score * Decimal("0.4")
            + exposure_score * Decimal("0.3")
            + drawdown_score * Decimal("0.3")
        )

        return RiskMetrics(
            current_leverage=leverage,
            portfolio_value=portfolio_value,
            total_exposure=total_exposure,
            daily_pnl=daily_pnl,
            var95=var95,
            max_drawdown=drawdown,
            risk_score=min(risk_score, Decimal("1")),
        )

    def check_alerts(self, metrics: RiskMetrics) -> list[RiskAlert]:
        """Raise new alerts for the given metrics.

        An alert is only raised when no unacknowledged alert of the same
        type and severity is already open.

        Returns:
            Newly raised alerts (possibly empty).
        """
        limits = self._limits_provider()
        candidates: list[RiskAlert] = []

        if metrics.current_leverage > limits.max_leverage * _WARN_RATIO:
            severity = (
                AlertSeverity.CRITICAL
                if metrics.current_leverage > limits.max_leverage
                else AlertSeverity.HIGH
            )
            candidates.append(
                RiskAlert(
                    type=AlertType.LEVERAGE,
                    severity=severity,
                    message=(
                        f"Portfolio leverage {metrics.current_leverage:.2f}x "
                        f"approaching limit {limits.max_leverage}x"
                    ),
                    recommended_actions=["Reduce position sizes", "Close some positions"],
                )
            )

        if metrics.daily_pnl < -limits.max_daily_loss * _WARN_RATIO:
            severity = (
                AlertSeverity.CRITICAL
                if metrics.daily_pnl < -limits.max_daily_loss
                else AlertSeverity.HIGH
            )
            candidates.append(
                RiskAlert(
                    type=AlertType.DRAWDOWN,
                    severity=severity,
                    message=(
                        f"Daily loss {metrics.daily_pnl:.2f} approaching limit "
                        f"{-limits.max_daily_loss}"
                    ),
                    recommended_actions=[
                        "Stop trading for today",
                        "Review strategy parameters",
                    ],
                )
            )

        return self._raise(candidates)

    @staticmethod
    def position_risk(position: ExchangePosition, leverage: int) -> PositionRisk:
        """Estimate how far the mark price is from liquidation.

        The distance is a fraction of the mark price, floored at zero.
        """
        entry = position.entry_price
        mark = position.mark_price if position.mark_price > 0 else entry
        margin_fraction = Decimal("1") / Decimal(max(leverage, 1))
        if position.side is PositionSide.LONG:
            liquidation_price = entry * (1 - margin_fraction)
            distance = (mark - liquidation_price) / mark if mark > 0 else Decimal("0")
        else:
            liquidation_price = entry * (1 + margin_fraction)
            distance = (liquidation_price - mark) / mark if mark > 0 else Decimal("0")
        return PositionRisk(
            exchange=position.exchange,
            symbol=position.symbol,
            side=position.side,
            notional=position.notional,
            leverage=leverage,
            liquidation_price=liquidation_price,
            distance_to_liquidation=max(distance, Decimal("0")),
        )

    def check_position_alerts(self, risks: list[PositionRisk]) -> list[RiskAlert]:
        """Raise alerts for positions close to their liquidation price."""
        candidates: list[RiskAlert] = []
        for risk in risks:
            if risk.distance_to_liquidation >= _LIQUIDATION_WARN_DISTANCE:
                continue
            severity = (
                AlertSeverity.CRITICAL
                if risk.distance_to_liquidation < _LIQUIDATION_CRITICAL_DISTANCE
                else AlertSeverity.HIGH
            )
            candidates.append(
                RiskAlert(
                    type=AlertType.LIQUIDATION,
                    severity=severity,
                    message=(
                        f"Position {risk.symbol} on {risk.exchange} close to liquidation: "
                        f"{risk.distance_to_liquidation * 100:.2f}%"
                    ),
                    recommended_actions=[
                        "Add margin",
                        "Reduce position size",
                        "Close position",
                    ],
                    subject=risk.subject,
                )
            )
        return self._raise(candidates)

    def _raise(self, candidates: list[RiskAlert]) -> list[RiskAlert]:
        new_alerts = [a for a in candidates if not self._is_open(a)]
        for alert in new_alerts:
            logger.warning(
                "risk_alert_raised",
                alert_type=alert.type.value,
                severity=alert.severity.value,
                subject=alert.subject,
                message=alert.message,
            )
        self._alerts.extend(new_alerts)
        return new_alerts

    def get_active_alerts(self) -> list[RiskAlert]:
        """Return all unacknowledged alerts."""
        return [a for a in self._alerts if not a.acknowledged]

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert acknowledged. Returns False if the id is unknown."""
        for alert in self._alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                return True
        return False

    def _is_open(self, candidate: RiskAlert) -> bool:
        return any(
            a.type is candidate.type
            and a.severity is candidate.severity
            and a.subject == candidate.subject
            and not a.acknowledged
            for a in self._alerts
        )
