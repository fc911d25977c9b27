"""Entry leg selection and margin sizing.

All calculations use Decimal arithmetic exclusively.

Sizing flow:
1. margin = min(free_margin * entry_margin_fraction, max_margin_per_trade)
2. leverage = min(target_leverage, max_leverage)
3. position size (notional) = margin * leverage
"""

from decimal import Decimal

from fundarb.models import EntryLeg, Opportunity, PositionSide


def entry_margin(
    free_margin: Decimal,
    fraction: Decimal,
    cap: Decimal,
) -> Decimal:
    """Margin committed to one entry. Never negative."""
    if free_margin <= 0 or fraction <= 0:
        return Decimal("0")
    return min(free_margin * fraction, cap)


def effective_leverage(target: int, max_leverage: Decimal) -> int:
    """Target leverage capped by the current risk limit, at least 1x."""
    return max(1, min(target, int(max_leverage)))


def select_entry_leg(
    opportunity: Opportunity,
    margin: Decimal,
    leverage: int,
) -> EntryLeg:
    """Pick the exchange and side of the single directional entry order.

    The entry goes on the leg that settles first (the funding deadline).
    When both legs settle together the larger absolute rate wins, long
    exchange first on an exact tie. The side is the one that receives
    funding: LONG when the rate is negative, SHORT otherwise.
    """
    long_leg = (opportunity.long_exchange, opportunity.long_funding_rate)
    short_leg = (opportunity.short_exchange, opportunity.short_funding_rate)

    if opportunity.long_next_funding_time < opportunity.short_next_funding_time:
        exchange, rate = long_leg
    elif opportunity.short_next_funding_time < opportunity.long_next_funding_time:
        exchange, rate = short_leg
    elif abs(opportunity.short_funding_rate) > abs(opportunity.long_funding_rate):
        exchange, rate = short_leg
    else:
        exchange, rate = long_leg

    return EntryLeg(
        exchange=exchange,
        side=PositionSide.LONG if rate < 0 else PositionSide.SHORT,
        margin=margin,
        leverage=leverage,
        funding_rate=rate,
    )
