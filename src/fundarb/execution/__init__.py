"""Execution layer -- entry sizing and the funding-aligned task scheduler."""

from fundarb.execution.scheduler import ExecutionScheduler
from fundarb.execution.sizing import entry_margin, select_entry_leg

__all__ = ["ExecutionScheduler", "entry_margin", "select_entry_leg"]
