"""Opportunity ranking: one best candidate per symbol, sorted by expected profit.

Algorithm:
  1. Group raw candidates by symbol
  2. Keep the maximum expected_profit per symbol (first seen wins a tie)
  3. Sort winners by expected_profit descending
  4. Truncate to limit
"""

import time
from collections import Counter
from decimal import Decimal

from fundarb.models import Opportunity

BROADCAST_LIMIT = 50
EXECUTION_LIMIT = 15


class OpportunityRanker:
    """Deduplicates and ranks raw scenario candidates."""

    def rank(
        self, opportunities: list[Opportunity], limit: int = BROADCAST_LIMIT
    ) -> list[Opportunity]:
        """Return at most one opportunity per symbol, best first.

        Args:
            opportunities: Raw candidates from one scan cycle (any order).
            limit: Maximum number of entries to return.

        Returns:
            List sorted by expected_profit descending, len <= limit.
            Empty input returns an empty list.
        """
        if limit <= 0:
            return []

        best: dict[str, Opportunity] = {}
        for opp in opportunities:
            current = best.get(opp.symbol)
            if current is None or opp.expected_profit > current.expected_profit:
                best[opp.symbol] = opp

        # sorted() is stable, so equal profits keep first-seen order
        ranked = sorted(best.values(), key=lambda o: o.expected_profit, reverse=True)
        return ranked[:limit]

    @staticmethod
    def summarize(opportunities: list[Opportunity]) -> dict:
        """Simple statistics over a ranked list.

        Returns:
            Dict with total_symbols, avg_profit, scenario_count, last_updated.
        """
        total = len(opportunities)
        avg_profit = (
            sum((o.expected_profit for o in opportunities), Decimal("0")) / total
            if total
            else Decimal("0")
        )
        scenario_count = Counter(o.scenario_id for o in opportunities)
        return {
            "total_symbols": total,
            "avg_profit": avg_profit,
            "scenario_count": dict(sorted(scenario_count.items())),
            "last_updated": time.time(),
        }
