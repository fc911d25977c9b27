"""Pre-trade Risk Gate.

Every applicable check runs and every failing reason is collected; there is
no short-circuit, so a rejection explains itself completely:
  (a) size <= max_position_size
  (b) open positions < max_open_positions
  (c) size / portfolio_value <= max_portfolio_risk
  (d) correlation with open positions <= correlation_limit

Same-symbol positions are treated as fully correlated (0.8); distinct symbols
as uncorrelated.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from fundarb.logging import get_logger
from fundarb.risk.limits import RiskLimits

if TYPE_CHECKING:
    from fundarb.config import RiskLimitsUpdate
    from fundarb.models import Opportunity

logger = get_logger(__name__)

SAME_SYMBOL_CORRELATION = Decimal("0.8")


@dataclass
class PortfolioState:
    """Snapshot of current exposure used for admission decisions."""

    open_symbols: list[str] = field(default_factory=list)
    portfolio_value: Decimal = Decimal("0")

    @property
    def open_positions(self) -> int:
        return len(self.open_symbols)


@dataclass
class AdmissionDecision:
    """Allow, or reject with every failing reason."""

    allowed: bool
    reasons: list[str] = field(default_factory=list)


class RiskGate:
    """Validates a candidate against portfolio limits before execution.

    Args:
        limits: Initial risk limits. Replaced atomically by update_limits().
    """

    def __init__(self, limits: RiskLimits | None = None) -> None:
        self._limits = limits or RiskLimits()

    @property
    def limits(self) -> RiskLimits:
        return self._limits

    def update_limits(self, update: RiskLimitsUpdate) -> RiskLimits:
        """Apply a partial update. Raises InvalidRiskLimits on bad values."""
        self._limits = self._limits.merged(update)
        logger.info("risk_limits_updated", **{k: str(v) for k, v in update.as_dict().items()})
        return self._limits

    def admit(
        self,
        opportunity: Opportunity,
        size: Decimal,
        portfolio: PortfolioState,
        limits: RiskLimits | None = None,
    ) -> AdmissionDecision:
        """Decide whether a candidate may be executed.

        Args:
            opportunity: The ranked candidate.
            size: Proposed notional position size in quote currency.
            portfolio: Current open positions and portfolio value.
            limits: Limits to apply; defaults to the gate's current limits.

        Returns:
            AdmissionDecision with allowed=True and no reasons, or
            allowed=False and all failing reasons.
        """
        limits = limits or self._limits
        reasons: list[str] = []

        if size <= 0:
            reasons.append("Position size must be positive")

        if size > limits.max_position_size:
            reasons.append(
                f"Position size {size} exceeds maximum {limits.max_position_size}"
            )

        if portfolio.open_positions >= limits.max_open_positions:
            reasons.append(
                f"Maximum number of positions reached ({limits.max_open_positions})"
            )

        if portfolio.portfolio_value <= 0:
            reasons.append("Portfolio value unavailable")
        else:
            portfolio_risk = size / portfolio.portfolio_value
            if portfolio_risk > limits.max_portfolio_risk:
                reasons.append(
                    f"Position would exceed max portfolio risk: "
                    f"{portfolio_risk * 100:.2f}% > {limits.max_portfolio_risk * 100:.2f}%"
                )

        correlation = self.symbol_correlation(opportunity.symbol, portfolio.open_symbols)
        if correlation > limits.correlation_limit:
            reasons.append(
                f"High correlation {correlation * 100:.2f}% with existing positions"
            )

        if reasons:
            logger.debug(
                "admission_rejected",
                symbol=opportunity.symbol,
                scenario=opportunity.scenario_id,
                reasons=reasons,
            )
            return AdmissionDecision(allowed=False, reasons=reasons)
        return AdmissionDecision(allowed=True)

    @staticmethod
    def symbol_correlation(symbol: str, open_symbols: list[str]) -> Decimal:
        """Correlation proxy: 0.8 if the symbol is already held, else 0."""
        return SAME_SYMBOL_CORRELATION if symbol in open_symbols else Decimal("0")
