"""Exchange layer -- ccxt adapters behind a single routing port."""

from fundarb.exchange.ccxt_adapter import CcxtExchangeAdapter
from fundarb.exchange.client import ExchangeAdapter
from fundarb.exchange.port import ExchangePort
from fundarb.exchange.types import normalize_symbol, to_unified_symbol

__all__ = [
    "CcxtExchangeAdapter",
    "ExchangeAdapter",
    "ExchangePort",
    "normalize_symbol",
    "to_unified_symbol",
]
