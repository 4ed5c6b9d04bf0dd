import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from analytics.orderflow import CVDAccumulator

logger = logging.getLogger(__name__)

PRICE = 'price'
VOLUME = 'volume'
OPEN_INTEREST = 'open_interest'
CVD = 'cvd'
SERIES_KINDS = (PRICE, VOLUME, OPEN_INTEREST, CVD)


@dataclass(frozen=True)
class HistorySlice:
    """Private copy of one instrument's buffers, safe to hand to a worker thread."""
    instrument: str
    timestamp: int
    prices: Tuple[float, ...]
    volumes: Tuple[float, ...]
    open_interest: Tuple[float, ...]
    cvd: Tuple[float, ...]

    @property
    def current_price(self) -> float:
        return self.prices[-1] if self.prices else 0.0


class InstrumentHistory:
    def __init__(self, capacity: int):
        self.prices = deque(maxlen=capacity)
        self.volumes = deque(maxlen=capacity)
        self.open_interest = deque(maxlen=capacity)
        self.cvd = CVDAccumulator(capacity)

    def append(self, price: float, volume: float, open_interest: float) -> float:
        previous_price = self.prices[-1] if self.prices else None
        self.prices.append(price)
        self.volumes.append(volume)
        self.open_interest.append(open_interest)
        return self.cvd.on_tick(price, previous_price, volume)

    def series(self, kind: str):
        if kind == PRICE:
            return self.prices
        if kind == VOLUME:
            return self.volumes
        if kind == OPEN_INTEREST:
            return self.open_interest
        if kind == CVD:
            return self.cvd.values
        raise ValueError(f"Unknown history series '{kind}'")


class HistoryStore:
    """Bounded per-instrument price, volume, open interest and CVD buffers.

    The store has a single writer (the engine coordinator). Readers either get
    a tuple view through ``series`` or a full ``HistorySlice`` copy.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ValueError("History capacity must be positive")
        self.capacity = capacity
        self._histories: Dict[str, InstrumentHistory] = {}

    def update(self, instrument: str, price: float, volume: float, open_interest: float = 0.0) -> float:
        history = self._histories.get(instrument)
        if history is None:
            history = InstrumentHistory(self.capacity)
            self._histories[instrument] = history
            logger.debug("Tracking new instrument %s", instrument)
        return history.append(float(price), float(volume), float(open_interest or 0.0))

    def series(self, instrument: str, kind: str) -> Tuple[float, ...]:
        if kind not in SERIES_KINDS:
            raise ValueError(f"Unknown history series '{kind}'")
        history = self._histories.get(instrument)
        if history is None:
            return ()
        return tuple(history.series(kind))

    def slice(self, instrument: str, timestamp: int) -> HistorySlice:
        return HistorySlice(
            instrument=instrument,
            timestamp=timestamp,
            prices=self.series(instrument, PRICE),
            volumes=self.series(instrument, VOLUME),
            open_interest=self.series(instrument, OPEN_INTEREST),
            cvd=self.series(instrument, CVD),
        )

    def latest_price(self, instrument: str) -> Optional[float]:
        prices = self.series(instrument, PRICE)
        return prices[-1] if prices else None

    def instruments(self) -> List[str]:
        return list(self._histories)

    def reset(self, instrument: str) -> None:
        self._histories.pop(instrument, None)

    def snapshot_cvd_state(self) -> Dict[str, Dict]:
        return {
            instrument: history.cvd.snapshot_state()
            for instrument, history in self._histories.items()
        }

    def restore_cvd_state(self, snapshot: Dict[str, Dict]) -> None:
        for instrument, state in snapshot.items():
            history = self._histories.get(instrument)
            if history is None:
                history = InstrumentHistory(self.capacity)
                self._histories[instrument] = history
            history.cvd.restore_state(state)

    def __contains__(self, instrument: str) -> bool:
        return instrument in self._histories

    def __len__(self) -> int:
        return len(self._histories)
