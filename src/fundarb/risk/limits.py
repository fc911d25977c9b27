"""Portfolio risk limits, validated at the boundary with pydantic."""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fundarb.config import RiskLimitsUpdate, RiskSettings
from fundarb.exceptions import InvalidRiskLimits


class RiskLimits(BaseModel):
    """Limits read by the Risk Gate and the risk monitor.

    Immutable: updates produce a new validated instance via merged().
    """

    model_config = ConfigDict(frozen=True)

    max_leverage: Decimal = Field(default=Decimal("10"), gt=0, le=125)
    max_position_size: Decimal = Field(default=Decimal("100000"), gt=0)
    max_portfolio_risk: Decimal = Field(default=Decimal("0.05"), gt=0, le=1)
    max_daily_loss: Decimal = Field(default=Decimal("1000"), gt=0)
    max_open_positions: int = Field(default=20, ge=1)
    correlation_limit: Decimal = Field(default=Decimal("0.7"), ge=0, le=1)

    @classmethod
    def from_settings(cls, settings: RiskSettings) -> RiskLimits:
        """Build limits from RISK_ environment settings."""
        return cls(
            max_leverage=settings.max_leverage,
            max_position_size=settings.max_position_size,
            max_portfolio_risk=settings.max_portfolio_risk,
            max_daily_loss=settings.max_daily_loss,
            max_open_positions=settings.max_open_positions,
            correlation_limit=settings.correlation_limit,
        )

    def merged(self, update: RiskLimitsUpdate) -> RiskLimits:
        """Return a new RiskLimits with the update applied.

        Raises:
            InvalidRiskLimits: If the merged values fail validation. The
                current instance is left untouched.
        """
        data = {**self.model_dump(), **update.as_dict()}
        try:
            return RiskLimits.model_validate(data)
        except ValidationError as e:
            raise InvalidRiskLimits(str(e)) from e
