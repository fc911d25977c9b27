"""P&L layer -- in-memory position ledger and daily loss tracking."""

from fundarb.pnl.ledger import PositionLedger

__all__ = ["PositionLedger"]
