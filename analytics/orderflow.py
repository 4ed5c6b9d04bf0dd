from collections import deque
from typing import Dict, Optional, Sequence

import numpy as np

CVD_MAX_VOLUME_WEIGHT = 3.0
CVD_WEIGHT_SCALE = 10.0

BULLISH = 'bullish'
BEARISH = 'bearish'
NEUTRAL = 'neutral'


class CVDAccumulator:
    """Running cumulative volume delta for one instrument.

    Each tick's volume is signed by the direction of the price move and
    weighted by the size of that move, capped at ``CVD_MAX_VOLUME_WEIGHT``.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self.values = deque(maxlen=capacity)

    def on_tick(self, price: float, previous_price: Optional[float], volume: float) -> float:
        if previous_price is None:
            # First tick for the instrument, or the first after a restore
            current = self.get_cvd()
            self.values.append(current)
            return current

        delta = self.volume_delta(price, previous_price, volume)
        new_cvd = self.get_cvd() + delta
        self.values.append(new_cvd)
        return new_cvd

    @staticmethod
    def volume_delta(price: float, previous_price: float, volume: float) -> float:
        price_change = price - previous_price
        if price_change == 0:
            return 0.0
        change_pct = abs(price_change) / previous_price if previous_price else 0.0
        weight = min(1.0 + change_pct * CVD_WEIGHT_SCALE, CVD_MAX_VOLUME_WEIGHT)
        if price_change > 0:
            return volume * weight
        return -volume * weight

    def get_cvd(self) -> float:
        if not self.values:
            return 0.0
        return self.values[-1]

    def snapshot_state(self) -> Dict:
        return {
            'capacity': self.capacity,
            'values': list(self.values),
        }

    def restore_state(self, snapshot: Dict):
        self.values = deque(
            (float(v) for v in snapshot.get('values', [])),
            maxlen=self.capacity,
        )


def cvd_slope(values: Sequence[float], lookback: int = 5) -> float:
    """Least-squares slope of the last ``lookback + 1`` CVD points against their index."""
    if len(values) < lookback + 1:
        return 0.0
    recent = np.asarray(list(values)[-(lookback + 1):], dtype=float)
    n = len(recent)
    if n < 2:
        return 0.0
    x = np.arange(n, dtype=float)
    sum_x = x.sum()
    sum_y = recent.sum()
    sum_xy = (x * recent).sum()
    sum_x2 = (x * x).sum()
    return float((n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x))


def cvd_trend(values: Sequence[float], lookback: int = 10, threshold: float = 0.1) -> str:
    if len(values) < lookback or lookback < 1:
        return NEUTRAL
    recent = list(values)[-lookback:]
    first, last = recent[0], recent[-1]
    strength = (last - first) / max(abs(first), 1.0)
    if strength > threshold:
        return BULLISH
    if strength < -threshold:
        return BEARISH
    return NEUTRAL
