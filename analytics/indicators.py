from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from analytics.history import HistorySlice
from analytics.orderflow import cvd_slope, cvd_trend, NEUTRAL

DEFAULT_MA_PERIODS = (5, 8, 13, 20, 21, 34, 50)


@dataclass(frozen=True)
class MACD:
    line: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


@dataclass(frozen=True)
class BollingerBands:
    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0


@dataclass(frozen=True)
class IndicatorSnapshot:
    instrument: str
    timestamp: int
    price: float
    rsi: float = 50.0
    macd: MACD = field(default_factory=MACD)
    moving_averages: Mapping[int, float] = field(default_factory=dict)
    bollinger: BollingerBands = field(default_factory=BollingerBands)
    volume: float = 0.0
    avg_volume: float = 0.0
    volume_spike: bool = False
    cvd: float = 0.0
    cvd_slope: float = 0.0
    cvd_trend: str = NEUTRAL
    open_interest: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, 'moving_averages', MappingProxyType(dict(self.moving_averages)))

    def ma(self, period: int) -> float:
        return self.moving_averages.get(period, 0.0)

    def to_dict(self) -> Dict:
        return {
            'instrument': self.instrument,
            'timestamp': self.timestamp,
            'price': self.price,
            'rsi': self.rsi,
            'macd': {
                'line': self.macd.line,
                'signal': self.macd.signal,
                'histogram': self.macd.histogram,
            },
            'moving_averages': {str(p): v for p, v in self.moving_averages.items()},
            'bollinger': {
                'upper': self.bollinger.upper,
                'middle': self.bollinger.middle,
                'lower': self.bollinger.lower,
            },
            'volume': self.volume,
            'avg_volume': self.avg_volume,
            'volume_spike': self.volume_spike,
            'cvd': self.cvd,
            'cvd_slope': self.cvd_slope,
            'cvd_trend': self.cvd_trend,
            'open_interest': self.open_interest,
        }

    def subset(self) -> Dict:
        """Indicator values recorded alongside a persisted signal."""
        subset = {
            'rsi': self.rsi,
            'macd': {
                'line': self.macd.line,
                'signal': self.macd.signal,
                'histogram': self.macd.histogram,
            },
            'bollinger_upper': self.bollinger.upper,
            'bollinger_lower': self.bollinger.lower,
            'current_price': self.price,
            'volume': self.volume,
            'volume_spike': self.volume_spike,
            'cvd': self.cvd,
            'cvd_trend': self.cvd_trend,
        }
        for period, value in self.moving_averages.items():
            subset[f'ma{period}'] = value
        return subset


def rsi(prices: Sequence[float], period: int = 14) -> float:
    if len(prices) < period + 1:
        return 50.0
    deltas = np.diff(np.asarray(prices[-(period + 1):], dtype=float))
    avg_gain = deltas[deltas > 0].sum() / period
    avg_loss = -deltas[deltas < 0].sum() / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return float(100.0 - (100.0 / (1.0 + rs)))


def ema(prices: Sequence[float], period: int) -> float:
    # Seeded with the oldest buffered price and re-run over the whole buffer
    if len(prices) == 0:
        return 0.0
    multiplier = 2.0 / (period + 1)
    value = float(prices[0])
    for price in prices[1:]:
        value = (price - value) * multiplier + value
    return value


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal_ratio: float = 0.8) -> MACD:
    if len(prices) < slow:
        return MACD()
    line = ema(prices, fast) - ema(prices, slow)
    signal = line * signal_ratio
    return MACD(line=line, signal=signal, histogram=line - signal)


def sma(prices: Sequence[float], period: int) -> float:
    if len(prices) < period:
        return float(prices[-1]) if len(prices) else 0.0
    return float(np.mean(np.asarray(prices[-period:], dtype=float)))


def bollinger_bands(prices: Sequence[float], period: int = 20, std_mult: float = 2.0) -> BollingerBands:
    if len(prices) < period:
        current = float(prices[-1]) if len(prices) else 0.0
        return BollingerBands(upper=current, middle=current, lower=current)
    window = np.asarray(prices[-period:], dtype=float)
    middle = float(window.mean())
    std_dev = float(window.std())
    return BollingerBands(
        upper=middle + std_dev * std_mult,
        middle=middle,
        lower=middle - std_dev * std_mult,
    )


def volume_spike(volumes: Sequence[float], lookback: int = 20, multiplier: float = 2.0) -> Tuple[float, bool]:
    if len(volumes) < lookback:
        return (float(volumes[-1]) if len(volumes) else 0.0), False
    avg_volume = float(np.mean(np.asarray(volumes[-lookback:], dtype=float)))
    return avg_volume, bool(volumes[-1] > avg_volume * multiplier)


class IndicatorCalculator:
    """Builds an ``IndicatorSnapshot`` from a history slice.

    Holds configuration only; ``compute`` is side-effect free so one
    calculator can be shared by every worker thread.
    """

    def __init__(
        self,
        rsi_period: int = 14,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal_ratio: float = 0.8,
        ma_periods: Sequence[int] = DEFAULT_MA_PERIODS,
        bollinger_period: int = 20,
        bollinger_std_mult: float = 2.0,
        volume_lookback: int = 20,
        volume_spike_mult: float = 2.0,
        cvd_slope_lookback: int = 5,
        cvd_trend_lookback: int = 10,
        cvd_trend_threshold: float = 0.1,
    ):
        self.rsi_period = rsi_period
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal_ratio = macd_signal_ratio
        self.ma_periods = tuple(int(p) for p in ma_periods)
        self.bollinger_period = bollinger_period
        self.bollinger_std_mult = bollinger_std_mult
        self.volume_lookback = volume_lookback
        self.volume_spike_mult = volume_spike_mult
        self.cvd_slope_lookback = cvd_slope_lookback
        self.cvd_trend_lookback = cvd_trend_lookback
        self.cvd_trend_threshold = cvd_trend_threshold

    @classmethod
    def from_config(cls, indicator_cfg: Optional[Dict] = None) -> 'IndicatorCalculator':
        cfg = indicator_cfg or {}
        return cls(
            rsi_period=cfg.get('rsi_period', 14),
            macd_fast=cfg.get('macd_fast', 12),
            macd_slow=cfg.get('macd_slow', 26),
            macd_signal_ratio=cfg.get('macd_signal_ratio', 0.8),
            ma_periods=cfg.get('ma_periods', DEFAULT_MA_PERIODS),
            bollinger_period=cfg.get('bollinger_period', 20),
            bollinger_std_mult=cfg.get('bollinger_std_mult', 2.0),
            volume_lookback=cfg.get('volume_lookback', 20),
            volume_spike_mult=cfg.get('volume_spike_mult', 2.0),
            cvd_slope_lookback=cfg.get('cvd_slope_lookback', 5),
            cvd_trend_lookback=cfg.get('cvd_trend_lookback', 10),
            cvd_trend_threshold=cfg.get('cvd_trend_threshold', 0.1),
        )

    def compute(self, history: HistorySlice) -> IndicatorSnapshot:
        prices = history.prices
        volumes = history.volumes
        avg_volume, spike = volume_spike(volumes, self.volume_lookback, self.volume_spike_mult)

        return IndicatorSnapshot(
            instrument=history.instrument,
            timestamp=history.timestamp,
            price=history.current_price,
            rsi=rsi(prices, self.rsi_period),
            macd=macd(prices, self.macd_fast, self.macd_slow, self.macd_signal_ratio),
            moving_averages={period: sma(prices, period) for period in self.ma_periods},
            bollinger=bollinger_bands(prices, self.bollinger_period, self.bollinger_std_mult),
            volume=volumes[-1] if volumes else 0.0,
            avg_volume=avg_volume,
            volume_spike=spike,
            cvd=history.cvd[-1] if history.cvd else 0.0,
            cvd_slope=cvd_slope(history.cvd, self.cvd_slope_lookback),
            cvd_trend=cvd_trend(history.cvd, self.cvd_trend_lookback, self.cvd_trend_threshold),
            open_interest=history.open_interest[-1] if history.open_interest else 0.0,
        )
