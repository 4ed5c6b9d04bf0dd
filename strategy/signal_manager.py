from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional


class SignalType(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    WAIT = "WAIT"


def generate_signal_id(instrument: str, strategy: str, timestamp: int) -> str:
    return f"{instrument}_{strategy}_{timestamp}"


@dataclass
class TradingSignal:
    instrument: str
    strategy: str
    signal_type: SignalType
    timestamp: int
    entry_price: float
    take_profit: float
    stop_loss: float
    indicators: Dict = field(default_factory=dict)
    conditions: Dict[str, bool] = field(default_factory=dict)
    signal_id: str = ''
    active: bool = True
    executed: bool = False
    executed_at: Optional[int] = None
    pnl: Optional[float] = None

    def __post_init__(self):
        self.signal_type = SignalType(self.signal_type)
        if not self.signal_id:
            self.signal_id = generate_signal_id(self.instrument, self.strategy, self.timestamp)

    @property
    def key(self):
        return (self.instrument, self.strategy, self.signal_type.value)

    def deactivate(self) -> None:
        self.active = False

    def mark_executed(self, execution_price: float, executed_at: int) -> None:
        self.executed = True
        self.executed_at = executed_at
        self.active = False
        if self.signal_type == SignalType.LONG:
            self.pnl = execution_price - self.entry_price
        elif self.signal_type == SignalType.SHORT:
            self.pnl = self.entry_price - execution_price

    def to_dict(self) -> Dict:
        return {
            'id': self.signal_id,
            'instrument': self.instrument,
            'strategy': self.strategy,
            'signal': self.signal_type.value,
            'timestamp': self.timestamp,
            'entry_price': self.entry_price,
            'take_profit': self.take_profit,
            'stop_loss': self.stop_loss,
            'indicators': self.indicators,
            'conditions': self.conditions,
            'active': self.active,
            'executed': self.executed,
            'executed_at': self.executed_at,
            'pnl': self.pnl,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'TradingSignal':
        return cls(
            signal_id=data.get('id', ''),
            instrument=data['instrument'],
            strategy=data['strategy'],
            signal_type=SignalType(data['signal']),
            timestamp=int(data['timestamp']),
            entry_price=float(data['entry_price']),
            take_profit=float(data['take_profit']),
            stop_loss=float(data['stop_loss']),
            indicators=data.get('indicators') or {},
            conditions=data.get('conditions') or {},
            active=bool(data.get('active', True)),
            executed=bool(data.get('executed', False)),
            executed_at=data.get('executed_at'),
            pnl=data.get('pnl'),
        )
