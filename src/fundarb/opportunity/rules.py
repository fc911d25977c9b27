"""Scenario rule set and classifier configuration.

The rule set is an immutable value handed to the classifier at construction,
so alternate thresholds can be tested without touching shared state.
"""

from dataclasses import dataclass
from decimal import Decimal

from fundarb.config import ScenarioSettings
from fundarb.models import RiskLevel, ScenarioKind, ScenarioRule

OPPOSITE_SIGN = ScenarioRule(
    kind=ScenarioKind.OPPOSITE_SIGN,
    name="Opposite sign funding",
    min_profit_threshold=Decimal("0.001"),
    risk_level=RiskLevel.LOW,
)
SAME_SIGN_SPREAD = ScenarioRule(
    kind=ScenarioKind.SAME_SIGN_SPREAD,
    name="Same sign funding spread",
    min_profit_threshold=Decimal("0.0025"),
    risk_level=RiskLevel.MEDIUM,
)
PRICE_GAP = ScenarioRule(
    kind=ScenarioKind.PRICE_GAP,
    name="Same sign funding with mark price gap",
    min_profit_threshold=Decimal("0.0025"),
    risk_level=RiskLevel.MEDIUM,
)
TIMING_DESYNC = ScenarioRule(
    kind=ScenarioKind.TIMING_DESYNC,
    name="Funding settlement desync",
    min_profit_threshold=Decimal("0.0005"),
    risk_level=RiskLevel.HIGH,
)
SAME_DIRECTION_HIGH_RATE = ScenarioRule(
    kind=ScenarioKind.SAME_DIRECTION_HIGH_RATE,
    name="Same direction high funding",
    min_profit_threshold=Decimal("0.004"),
    risk_level=RiskLevel.HIGH,
)

DEFAULT_RULES: tuple[ScenarioRule, ...] = (
    OPPOSITE_SIGN,
    SAME_SIGN_SPREAD,
    PRICE_GAP,
    TIMING_DESYNC,
    SAME_DIRECTION_HIGH_RATE,
)


@dataclass(frozen=True)
class ScenarioConfig:
    """Immutable classifier configuration: the five rules plus rule parameters."""

    rules: tuple[ScenarioRule, ...] = DEFAULT_RULES
    price_gap_threshold: Decimal = Decimal("0.0025")
    timing_desync_window_seconds: float = 600.0
    high_rate_floor: Decimal = Decimal("0.004")

    def __post_init__(self) -> None:
        kinds = [rule.kind for rule in self.rules]
        if sorted(k.id for k in kinds) != [1, 2, 3, 4, 5]:
            raise ValueError(
                "ScenarioConfig requires exactly one rule per scenario kind"
            )

    def rule_for(self, kind: ScenarioKind) -> ScenarioRule:
        """Return the configured rule for a scenario kind."""
        for rule in self.rules:
            if rule.kind is kind:
                return rule
        raise KeyError(kind)

    @classmethod
    def from_settings(cls, settings: ScenarioSettings) -> "ScenarioConfig":
        """Build the rule set with thresholds taken from ScenarioSettings."""
        thresholds = {
            ScenarioKind.OPPOSITE_SIGN: settings.opposite_sign_min_profit,
            ScenarioKind.SAME_SIGN_SPREAD: settings.same_sign_spread_min_profit,
            ScenarioKind.PRICE_GAP: settings.price_gap_min_profit,
            ScenarioKind.TIMING_DESYNC: settings.timing_desync_min_profit,
            ScenarioKind.SAME_DIRECTION_HIGH_RATE: (
                settings.same_direction_high_rate_min_profit
            ),
        }
        rules = tuple(
            ScenarioRule(
                kind=rule.kind,
                name=rule.name,
                min_profit_threshold=thresholds[rule.kind],
                risk_level=rule.risk_level,
            )
            for rule in DEFAULT_RULES
        )
        return cls(
            rules=rules,
            price_gap_threshold=settings.price_gap_threshold,
            timing_desync_window_seconds=settings.timing_desync_window_seconds,
            high_rate_floor=settings.high_rate_floor,
        )
