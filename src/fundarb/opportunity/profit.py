"""Per-scenario profit formulas.

Pure, deterministic functions over literal rate pairs. No I/O, no shared state.

  OPPOSITE_SIGN             |ra| + |rb|
  SAME_SIGN_SPREAD          |ra - rb|
  PRICE_GAP                 |pa - pb| / min(pa, pb) - |ra + rb| / 2
  TIMING_DESYNC             |ra| + |rb| if opposite sign, else |ra - rb| * 0.5
  SAME_DIRECTION_HIGH_RATE  |ra - rb|

weighted = expected * RISK_DISCOUNTS[kind] * confidence
"""

from decimal import Decimal

from fundarb.models import ScenarioKind

RISK_DISCOUNTS: dict[ScenarioKind, Decimal] = {
    ScenarioKind.OPPOSITE_SIGN: Decimal("0.95"),
    ScenarioKind.SAME_SIGN_SPREAD: Decimal("0.85"),
    ScenarioKind.PRICE_GAP: Decimal("0.75"),
    ScenarioKind.TIMING_DESYNC: Decimal("0.60"),
    ScenarioKind.SAME_DIRECTION_HIGH_RATE: Decimal("0.80"),
}

_TIMING_SAME_SIGN_DISCOUNT = Decimal("0.5")
_TWO = Decimal("2")


def is_opposite_sign(rate_a: Decimal, rate_b: Decimal) -> bool:
    """True when one rate is strictly positive and the other strictly negative."""
    return (rate_a > 0 and rate_b < 0) or (rate_a < 0 and rate_b > 0)


def is_same_sign(rate_a: Decimal, rate_b: Decimal) -> bool:
    """True when both rates are strictly positive or both strictly negative."""
    return (rate_a > 0 and rate_b > 0) or (rate_a < 0 and rate_b < 0)


def price_gap(price_a: Decimal, price_b: Decimal) -> Decimal:
    """Relative mark-price divergence between two exchanges."""
    return abs(price_a - price_b) / min(price_a, price_b)


def expected_profit(
    kind: ScenarioKind,
    rate_a: Decimal,
    rate_b: Decimal,
    price_a: Decimal | None = None,
    price_b: Decimal | None = None,
) -> Decimal:
    """Raw expected profit fraction for one funding period.

    Args:
        kind: Scenario being evaluated.
        rate_a: Funding rate on the first exchange.
        rate_b: Funding rate on the second exchange.
        price_a: Mark price on the first exchange (PRICE_GAP only).
        price_b: Mark price on the second exchange (PRICE_GAP only).

    Returns:
        Profit as a fraction of notional. PRICE_GAP without both prices
        falls back to the plain spread.
    """
    if kind is ScenarioKind.OPPOSITE_SIGN:
        return abs(rate_a) + abs(rate_b)

    if kind is ScenarioKind.PRICE_GAP:
        if price_a and price_b:
            funding_cost = abs(rate_a + rate_b) / _TWO
            return price_gap(price_a, price_b) - funding_cost
        return abs(rate_a - rate_b)

    if kind is ScenarioKind.TIMING_DESYNC:
        if is_opposite_sign(rate_a, rate_b):
            return abs(rate_a) + abs(rate_b)
        return abs(rate_a - rate_b) * _TIMING_SAME_SIGN_DISCOUNT

    # SAME_SIGN_SPREAD and SAME_DIRECTION_HIGH_RATE
    return abs(rate_a - rate_b)


def weighted_profit(
    kind: ScenarioKind,
    rate_a: Decimal,
    rate_b: Decimal,
    confidence: Decimal = Decimal("1"),
    price_a: Decimal | None = None,
    price_b: Decimal | None = None,
) -> Decimal:
    """Risk-adjusted profit: raw profit times the scenario discount and confidence."""
    base = expected_profit(kind, rate_a, rate_b, price_a, price_b)
    return base * RISK_DISCOUNTS[kind] * confidence


def usd_profit(profit_fraction: Decimal, position_size: Decimal) -> Decimal:
    """Quote-currency profit for a given notional position size."""
    return profit_fraction * position_size


def format_profit_pct(profit_fraction: Decimal) -> str:
    """Format a profit fraction as a percentage with four decimals."""
    return f"{profit_fraction * 100:.4f}%"
