"""Shared data models for the funding opportunity engine.

CRITICAL: All rates, prices, quantities and P&L use Decimal. Never use float
for money. Timestamps are Unix seconds (float); exchange-native milliseconds
are converted at the adapter boundary.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class OrderSide(str, Enum):
    """Order direction."""

    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    """Position direction."""

    LONG = "long"
    SHORT = "short"

    @property
    def entry_order_side(self) -> OrderSide:
        return OrderSide.BUY if self is PositionSide.LONG else OrderSide.SELL

    @property
    def close_order_side(self) -> OrderSide:
        return OrderSide.SELL if self is PositionSide.LONG else OrderSide.BUY


class RiskLevel(str, Enum):
    """Qualitative risk of a scenario rule."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ScenarioKind(str, Enum):
    """The five fixed cross-exchange funding scenarios."""

    OPPOSITE_SIGN = "opposite_sign"
    SAME_SIGN_SPREAD = "same_sign_spread"
    PRICE_GAP = "price_gap"
    TIMING_DESYNC = "timing_desync"
    SAME_DIRECTION_HIGH_RATE = "same_direction_high_rate"

    @property
    def id(self) -> int:
        """Stable numeric id, used as priority and dedup key."""
        return _SCENARIO_IDS[self]


_SCENARIO_IDS = {
    ScenarioKind.OPPOSITE_SIGN: 1,
    ScenarioKind.SAME_SIGN_SPREAD: 2,
    ScenarioKind.PRICE_GAP: 3,
    ScenarioKind.TIMING_DESYNC: 4,
    ScenarioKind.SAME_DIRECTION_HIGH_RATE: 5,
}


class TradeDirection(str, Enum):
    """How the two legs of an opportunity are meant to be held."""

    HEDGE = "hedge"  # long one exchange, short the other
    LONG_BOTH = "long_both"
    SHORT_BOTH = "short_both"


class TaskState(str, Enum):
    """Execution task lifecycle states."""

    IDLE = "idle"
    ARMED = "armed"
    WATCHING = "watching"
    FIRING = "firing"
    UNWINDING = "unwinding"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.DONE, TaskState.ABORTED)


@dataclass(frozen=True)
class FundingObservation:
    """Funding snapshot of one perpetual on one exchange for one cycle."""

    exchange: str
    symbol: str  # normalized, e.g. "BTCUSDT"
    funding_rate: Decimal
    funding_time: float
    next_funding_time: float
    mark_price: Decimal | None = None


@dataclass(frozen=True)
class ScenarioRule:
    """A classification rule with its admission threshold."""

    kind: ScenarioKind
    name: str
    min_profit_threshold: Decimal
    risk_level: RiskLevel

    @property
    def id(self) -> int:
        return self.kind.id


@dataclass(frozen=True)
class Opportunity:
    """A scored cross-exchange funding candidate from one scan cycle."""

    symbol: str
    rule: ScenarioRule
    long_exchange: str
    short_exchange: str
    long_funding_rate: Decimal
    short_funding_rate: Decimal
    expected_profit: Decimal
    weighted_profit: Decimal
    long_next_funding_time: float
    short_next_funding_time: float
    direction: TradeDirection = TradeDirection.HEDGE
    discovered_at: float = field(default_factory=time.time)

    @property
    def scenario_id(self) -> int:
        return self.rule.id

    @property
    def funding_deadline(self) -> float:
        """Earliest settlement across both legs."""
        return min(self.long_next_funding_time, self.short_next_funding_time)


@dataclass
class ExchangePosition:
    """Live position reported by an exchange."""

    exchange: str
    symbol: str
    side: PositionSide
    quantity: Decimal
    entry_price: Decimal = Decimal("0")
    mark_price: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")

    @property
    def notional(self) -> Decimal:
        price = self.mark_price if self.mark_price > 0 else self.entry_price
        return abs(self.quantity * price)


@dataclass
class OrderHandle:
    """Fill details of an order placed by the engine."""

    order_id: str
    exchange: str
    symbol: str
    side: OrderSide
    filled_qty: Decimal
    filled_price: Decimal
    fee: Decimal = Decimal("0")
    timestamp: float = field(default_factory=time.time)


@dataclass
class EntryLeg:
    """The single directional order an execution task places."""

    exchange: str
    side: PositionSide
    margin: Decimal
    leverage: int
    funding_rate: Decimal

    @property
    def notional(self) -> Decimal:
        return self.margin * Decimal(self.leverage)


@dataclass
class ExecutionResult:
    """Terminal outcome of an execution task."""

    state: TaskState
    reason: str
    realized_pnl: Decimal = Decimal("0")
    entry: OrderHandle | None = None
    exit: OrderHandle | None = None
    position_left_open: bool = False


@dataclass
class ExecutionTask:
    """Runtime state machine instance bound to one accepted opportunity."""

    id: str
    opportunity: Opportunity
    entry_leg: EntryLeg
    funding_deadline: float
    state: TaskState = TaskState.IDLE
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    result: ExecutionResult | None = None

    @property
    def symbol(self) -> str:
        return self.opportunity.symbol

    @property
    def scenario_id(self) -> int:
        return self.opportunity.scenario_id


@dataclass
class AccountBalance:
    """Quote-currency margin balance on one exchange."""

    exchange: str
    free: Decimal
    total: Decimal
