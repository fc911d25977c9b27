"""Symbol normalization and order sizing helpers.

The engine identifies instruments by their concatenated exchange-agnostic
name ("BTCUSDT"); ccxt identifies linear perpetuals as "BTC/USDT:USDT".
"""

from decimal import Decimal

# Longest first so "USDT" matches before "USD"
COMMON_QUOTE_CURRENCIES = (
    "FDUSD",
    "USDT",
    "USDC",
    "BUSD",
    "TUSD",
    "BTC",
    "ETH",
    "BNB",
    "DAI",
    "USD",
    "EUR",
)


def normalize_symbol(unified: str) -> str:
    """Convert a ccxt symbol to the engine's symbol.

    "BTC/USDT:USDT" -> "BTCUSDT", "ETH/USDC" -> "ETHUSDC".
    """
    pair = unified.split(":", 1)[0]
    return pair.replace("/", "").upper()


def to_unified_symbol(symbol: str, settle: str | None = None) -> str:
    """Convert an engine symbol to a ccxt linear perpetual symbol.

    "BTCUSDT" -> "BTC/USDT:USDT". Symbols that already contain "/" are
    returned unchanged. Unrecognised quotes are returned unchanged.
    """
    if "/" in symbol:
        return symbol
    upper = symbol.upper()
    for quote in COMMON_QUOTE_CURRENCIES:
        if upper.endswith(quote) and len(upper) > len(quote):
            base = upper[: -len(quote)]
            return f"{base}/{quote}:{settle or quote}"
    return symbol


def round_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round a value down to the nearest step increment.

    Always rounds DOWN, which prevents exceeding the margin allocated
    to the order.
    """
    if step <= 0:
        return value
    return (value // step) * step


def quantity_from_margin(
    margin: Decimal,
    price: Decimal,
    leverage: int,
    step: Decimal = Decimal("0"),
) -> Decimal:
    """Base-asset quantity that a margin amount opens at a given leverage.

    quantity = margin * leverage / price, rounded down to step.
    Returns 0 when any input is non-positive.
    """
    if margin <= 0 or price <= 0 or leverage <= 0:
        return Decimal("0")
    return round_to_step(margin * Decimal(leverage) / price, step)
