from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from analytics.indicators import IndicatorSnapshot
from strategy.signal_manager import SignalType

logger = logging.getLogger(__name__)

SCALPING = 'scalping'
INTRADAY = 'intraday'
PUMP = 'pump'


@dataclass(frozen=True)
class StrategyResult:
    strategy: str
    entry_price: float
    take_profit: float
    stop_loss: float
    conditions: Dict[str, bool] = field(default_factory=dict)

    @property
    def all_conditions_met(self) -> bool:
        return bool(self.conditions) and all(self.conditions.values())

    @property
    def signal_type(self) -> SignalType:
        return SignalType.LONG if self.all_conditions_met else SignalType.WAIT

    def failed_conditions(self) -> List[str]:
        return [name for name, passed in self.conditions.items() if not passed]


class Strategy(ABC):
    """A fixed conjunction of indicator predicates with percentage TP/SL offsets.

    Subclasses declare their tunable constants in ``defaults``; any of them can
    be overridden by the matching key in the strategy's config section.
    """

    name: str = ''
    defaults: Dict[str, float] = {}

    def __init__(self, config: Optional[Dict] = None):
        cfg = config or {}
        for key, default in self.defaults.items():
            setattr(self, key, cfg.get(key, default))

    @abstractmethod
    def check_conditions(self, snapshot: IndicatorSnapshot, price: float) -> Dict[str, bool]:
        pass

    def evaluate(self, snapshot: IndicatorSnapshot, price: Optional[float] = None) -> StrategyResult:
        current_price = snapshot.price if price is None else price
        return StrategyResult(
            strategy=self.name,
            entry_price=current_price,
            take_profit=current_price * (1 + self.take_profit_pct),
            stop_loss=current_price * (1 - self.stop_loss_pct),
            conditions=self.check_conditions(snapshot, current_price),
        )


class ScalpingStrategy(Strategy):
    name = SCALPING
    defaults = {
        'take_profit_pct': 0.005,
        'stop_loss_pct': 0.0025,
        'rsi_max': 35,
        'fast_ma': 8,
        'slow_ma': 21,
        'bollinger_band_pct': 0.005,
        'volume_mult': 2.0,
    }

    def check_conditions(self, snapshot: IndicatorSnapshot, price: float) -> Dict[str, bool]:
        return {
            'rsi': snapshot.rsi < self.rsi_max,
            'moving_averages': snapshot.ma(self.fast_ma) > snapshot.ma(self.slow_ma),
            'bollinger_bands': price <= snapshot.bollinger.lower * (1 + self.bollinger_band_pct),
            'macd': snapshot.macd.line > snapshot.macd.signal,
            'volume': snapshot.volume > snapshot.avg_volume * self.volume_mult,
            'cvd': snapshot.cvd_slope > 0,
        }


class IntradayStrategy(Strategy):
    name = INTRADAY
    defaults = {
        'take_profit_pct': 0.02,
        'stop_loss_pct': 0.01,
        'rsi_min': 35,
        'rsi_max': 65,
        'fast_ma': 20,
        'slow_ma': 34,
        'bollinger_band_pct': 0.01,
        'volume_mult': 1.2,
    }

    def check_conditions(self, snapshot: IndicatorSnapshot, price: float) -> Dict[str, bool]:
        slow = snapshot.ma(self.slow_ma)
        return {
            'bollinger_bands': price <= snapshot.bollinger.lower * (1 + self.bollinger_band_pct),
            'macd': snapshot.macd.line > snapshot.macd.signal,
            'rsi': self.rsi_min < snapshot.rsi < self.rsi_max,
            'moving_averages': price > slow and snapshot.ma(self.fast_ma) > slow,
            'volume': snapshot.volume > snapshot.avg_volume * self.volume_mult,
            'cvd': snapshot.cvd > 0 and snapshot.cvd_slope > 0,
        }


class PumpStrategy(Strategy):
    name = PUMP
    defaults = {
        'take_profit_pct': 0.03,
        'stop_loss_pct': 0.01,
        'rsi_min': 50,
        'rsi_max': 80,
        'fast_ma': 5,
        'slow_ma': 20,
        'volume_mult': 3.0,
    }

    def check_conditions(self, snapshot: IndicatorSnapshot, price: float) -> Dict[str, bool]:
        mid = snapshot.ma(self.slow_ma)
        return {
            'volume_spike': snapshot.volume_spike and snapshot.volume > snapshot.avg_volume * self.volume_mult,
            'rsi': self.rsi_min < snapshot.rsi < self.rsi_max,
            'moving_averages': price > mid and snapshot.ma(self.fast_ma) > mid,
            'macd': snapshot.macd.line > snapshot.macd.signal and snapshot.macd.line > 0,
            'cvd': snapshot.cvd > 0 and snapshot.cvd_slope > 0,
            'bollinger': price > snapshot.bollinger.middle,
        }


STRATEGY_CLASSES = {
    SCALPING: ScalpingStrategy,
    INTRADAY: IntradayStrategy,
    PUMP: PumpStrategy,
}


class StrategyEvaluator:
    def __init__(self, config: Optional[Dict] = None):
        strategies_cfg = config or {}
        self.strategies: List[Strategy] = [
            cls(strategies_cfg.get(name, {})) for name, cls in STRATEGY_CLASSES.items()
        ]

    def evaluate(self, snapshot: IndicatorSnapshot, price: Optional[float] = None) -> List[StrategyResult]:
        results = []
        for strategy in self.strategies:
            result = strategy.evaluate(snapshot, price)
            if not result.all_conditions_met:
                logger.debug(
                    "%s %s waiting on: %s",
                    snapshot.instrument,
                    strategy.name,
                    ', '.join(result.failed_conditions()),
                )
            results.append(result)
        return results

    def admitted(self, snapshot: IndicatorSnapshot, price: Optional[float] = None) -> List[StrategyResult]:
        return [r for r in self.evaluate(snapshot, price) if r.all_conditions_met]
