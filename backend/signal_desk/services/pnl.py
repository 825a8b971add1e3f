import math
from typing import Tuple

# Contract multipliers used for manual exits and live ticks
LOT_SIZES = {
    "NIFTY": 50,
    "BANKNIFTY": 15,
}
DEFAULT_LOT_SIZE = 1


def lot_size(instrument) -> int:
    key = getattr(instrument, "value", instrument)
    return LOT_SIZES.get(key, DEFAULT_LOT_SIZE)


def round2(value: float) -> float:
    """Round to 2 dp with halves going up, the way the dashboard rounds."""
    return math.floor(value * 100 + 0.5) / 100


def compute_pnl(entry_price: float, price: float, instrument) -> Tuple[float, float]:
    """Return (points P&L, money P&L) for a position marked at ``price``."""
    points = round2(price - entry_price)
    money = round2(points * lot_size(instrument))
    return points, money
