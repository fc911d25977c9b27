"""Risk layer -- admission gate, limits and portfolio risk monitoring."""

from fundarb.risk.gate import AdmissionDecision, PortfolioState, RiskGate
from fundarb.risk.limits import RiskLimits
from fundarb.risk.monitor import RiskMonitor

__all__ = ["AdmissionDecision", "PortfolioState", "RiskGate", "RiskLimits", "RiskMonitor"]
