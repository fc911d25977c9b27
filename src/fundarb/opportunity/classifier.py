"""Scenario classifier -- maps cross-exchange funding pairs to opportunities.

For every unordered pair of exchanges and every symbol listed on both, each of
the five scenario rules independently decides whether the pair is a
candidate. A rule admits a candidate only when its expected profit reaches the
rule's min_profit_threshold.

Funding convention: a positive rate means longs pay shorts, so the long leg
goes on the lower-rate exchange and the short leg on the higher-rate one.
"""

import time
from collections.abc import Callable
from decimal import Decimal
from itertools import combinations

from fundarb.logging import get_logger
from fundarb.models import (
    FundingObservation,
    Opportunity,
    ScenarioKind,
    ScenarioRule,
    TradeDirection,
)
from fundarb.opportunity.profit import (
    expected_profit,
    is_opposite_sign,
    is_same_sign,
    price_gap,
    weighted_profit,
)
from fundarb.opportunity.rules import ScenarioConfig

logger = get_logger(__name__)

_Pair = tuple[FundingObservation, FundingObservation]


class ScenarioClassifier:
    """Classifies funding snapshots into scenario opportunities.

    Args:
        config: Immutable rule set and rule parameters.
    """

    def __init__(self, config: ScenarioConfig | None = None) -> None:
        self._config = config or ScenarioConfig()
        self._evaluators: dict[
            ScenarioKind, Callable[[ScenarioRule, _Pair, float], Opportunity | None]
        ] = {
            ScenarioKind.OPPOSITE_SIGN: self._opposite_sign,
            ScenarioKind.SAME_SIGN_SPREAD: self._same_sign_spread,
            ScenarioKind.PRICE_GAP: self._price_gap,
            ScenarioKind.TIMING_DESYNC: self._timing_desync,
            ScenarioKind.SAME_DIRECTION_HIGH_RATE: self._same_direction_high_rate,
        }
        self.missing_price_pairs = 0

    @property
    def config(self) -> ScenarioConfig:
        return self._config

    def classify(
        self,
        snapshots: dict[str, list[FundingObservation]],
        now: float | None = None,
    ) -> list[Opportunity]:
        """Produce raw candidates for every rule across all exchange pairs.

        Args:
            snapshots: Funding observations keyed by exchange id.
            now: Discovery timestamp stamped on every candidate.

        Returns:
            Unordered list of candidates, possibly several per symbol.
        """
        discovered_at = time.time() if now is None else now
        self.missing_price_pairs = 0

        by_exchange = {
            exchange: {obs.symbol: obs for obs in observations}
            for exchange, observations in snapshots.items()
        }

        candidates: list[Opportunity] = []
        for ex_a, ex_b in combinations(sorted(by_exchange), 2):
            rates_a = by_exchange[ex_a]
            rates_b = by_exchange[ex_b]
            for symbol in sorted(rates_a.keys() & rates_b.keys()):
                pair = (rates_a[symbol], rates_b[symbol])
                for rule in self._config.rules:
                    opp = self._evaluators[rule.kind](rule, pair, discovered_at)
                    if opp is not None:
                        candidates.append(opp)

        if self.missing_price_pairs:
            logger.debug(
                "price_gap_rule_skipped",
                reason="mark_price_unavailable",
                pairs=self.missing_price_pairs,
            )
        return candidates

    # ------------------------------------------------------------------
    # Rule evaluators
    # ------------------------------------------------------------------

    def _opposite_sign(
        self, rule: ScenarioRule, pair: _Pair, now: float
    ) -> Opportunity | None:
        a, b = pair
        if not is_opposite_sign(a.funding_rate, b.funding_rate):
            return None
        long_obs, short_obs = (a, b) if a.funding_rate < 0 else (b, a)
        return self._admit(rule, long_obs, short_obs, now)

    def _same_sign_spread(
        self, rule: ScenarioRule, pair: _Pair, now: float
    ) -> Opportunity | None:
        a, b = pair
        if not is_same_sign(a.funding_rate, b.funding_rate):
            return None
        if a.funding_rate == b.funding_rate:
            return None
        long_obs, short_obs = _order_by_rate(a, b)
        return self._admit(rule, long_obs, short_obs, now)

    def _price_gap(
        self, rule: ScenarioRule, pair: _Pair, now: float
    ) -> Opportunity | None:
        a, b = pair
        if not is_same_sign(a.funding_rate, b.funding_rate):
            return None
        if not a.mark_price or not b.mark_price:
            self.missing_price_pairs += 1
            return None
        if price_gap(a.mark_price, b.mark_price) < self._config.price_gap_threshold:
            return None
        # Long the cheaper contract, short the dearer one
        long_obs, short_obs = (a, b) if a.mark_price < b.mark_price else (b, a)
        return self._admit(
            rule,
            long_obs,
            short_obs,
            now,
            price_long=long_obs.mark_price,
            price_short=short_obs.mark_price,
        )

    def _timing_desync(
        self, rule: ScenarioRule, pair: _Pair, now: float
    ) -> Opportunity | None:
        a, b = pair
        gap_seconds = abs(a.next_funding_time - b.next_funding_time)
        if not 0 < gap_seconds < self._config.timing_desync_window_seconds:
            return None
        long_obs, short_obs = _order_by_rate(a, b)
        return self._admit(rule, long_obs, short_obs, now)

    def _same_direction_high_rate(
        self, rule: ScenarioRule, pair: _Pair, now: float
    ) -> Opportunity | None:
        a, b = pair
        if not is_same_sign(a.funding_rate, b.funding_rate):
            return None
        floor = self._config.high_rate_floor
        if min(abs(a.funding_rate), abs(b.funding_rate)) < floor:
            return None
        direction = (
            TradeDirection.LONG_BOTH if a.funding_rate < 0 else TradeDirection.SHORT_BOTH
        )
        long_obs, short_obs = _order_by_rate(a, b)
        return self._admit(rule, long_obs, short_obs, now, direction=direction)

    # ------------------------------------------------------------------

    @staticmethod
    def _admit(
        rule: ScenarioRule,
        long_obs: FundingObservation,
        short_obs: FundingObservation,
        now: float,
        price_long: Decimal | None = None,
        price_short: Decimal | None = None,
        direction: TradeDirection = TradeDirection.HEDGE,
    ) -> Opportunity | None:
        """Score a pair and build the Opportunity if it clears the threshold."""
        profit = expected_profit(
            rule.kind,
            long_obs.funding_rate,
            short_obs.funding_rate,
            price_long,
            price_short,
        )
        if profit < rule.min_profit_threshold:
            return None
        return Opportunity(
            symbol=long_obs.symbol,
            rule=rule,
            long_exchange=long_obs.exchange,
            short_exchange=short_obs.exchange,
            long_funding_rate=long_obs.funding_rate,
            short_funding_rate=short_obs.funding_rate,
            expected_profit=profit,
            weighted_profit=weighted_profit(
                rule.kind,
                long_obs.funding_rate,
                short_obs.funding_rate,
                price_a=price_long,
                price_b=price_short,
            ),
            long_next_funding_time=long_obs.next_funding_time,
            short_next_funding_time=short_obs.next_funding_time,
            direction=direction,
            discovered_at=now,
        )


def _order_by_rate(
    a: FundingObservation, b: FundingObservation
) -> tuple[FundingObservation, FundingObservation]:
    """Return (lower-rate, higher-rate) observations."""
    return (a, b) if a.funding_rate <= b.funding_rate else (b, a)
