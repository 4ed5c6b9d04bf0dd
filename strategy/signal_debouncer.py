import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from api.metrics import metrics
from orchestration.scheduler import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

ABSENT = 'absent'
PENDING = 'pending'

SignalKey = Tuple[str, str, str]


@dataclass
class PendingSignal:
    key: SignalKey
    admitted_at: int
    timer: TimerHandle

    @property
    def strategy(self) -> str:
        return self.key[1]


class SignalDebouncer:
    """Admission control per (instrument, strategy, signal type).

    A repeat request inside ``duplicate_window_ms`` of the first admission is
    rejected without moving that origin. A request after the window replaces
    the pending record and restarts its expiry timer. When the timer fires the
    key is forgotten and the next request is admitted unconditionally.
    """

    def __init__(self, scheduler: Scheduler, duplicate_window_ms: int = 15000, debounce_ms: int = 5000):
        self.scheduler = scheduler
        self.duplicate_window_ms = int(duplicate_window_ms)
        self.debounce_ms = int(debounce_ms)
        self._pending: Dict[SignalKey, PendingSignal] = {}

    @classmethod
    def from_config(cls, scheduler: Scheduler, debouncer_cfg: Optional[Dict] = None) -> 'SignalDebouncer':
        cfg = debouncer_cfg or {}
        return cls(
            scheduler,
            duplicate_window_ms=cfg.get('duplicate_window_ms', 15000),
            debounce_ms=cfg.get('debounce_ms', 5000),
        )

    @staticmethod
    def make_key(instrument: str, strategy: str, signal_type) -> SignalKey:
        return (instrument, strategy, getattr(signal_type, 'value', signal_type))

    def should_process(self, instrument: str, strategy: str, signal_type, timestamp: int) -> bool:
        key = self.make_key(instrument, strategy, signal_type)
        self.scheduler.run_due()
        pending = self._pending.get(key)

        if pending is not None and timestamp - pending.admitted_at < self.duplicate_window_ms:
            logger.info(
                "Duplicate signal blocked for %s %s %s (%.1fs after admission, window %.1fs)",
                instrument, strategy, key[2],
                (timestamp - pending.admitted_at) / 1000.0,
                self.duplicate_window_ms / 1000.0,
            )
            metrics.record_signal_rejected(strategy, 'duplicate')
            return False

        if pending is not None:
            self.scheduler.cancel(pending.timer)
            logger.info("Replacing pending signal for %s %s %s", instrument, strategy, key[2])

        timer = self.scheduler.schedule(self.debounce_ms, lambda: self._expire(key, timer))
        self._pending[key] = PendingSignal(key=key, admitted_at=timestamp, timer=timer)
        metrics.update_pending_signals(len(self._pending))
        logger.info(
            "Signal approved for %s %s %s (%d pending)",
            instrument, strategy, key[2], len(self._pending),
        )
        return True

    def _expire(self, key: SignalKey, timer: TimerHandle) -> None:
        pending = self._pending.get(key)
        if pending is None or pending.timer is not timer:
            return
        del self._pending[key]
        metrics.update_pending_signals(len(self._pending))
        logger.debug("Signal debounce expired for %s", '_'.join(key))

    def state(self, instrument: str, strategy: str, signal_type) -> str:
        self.scheduler.run_due()
        key = self.make_key(instrument, strategy, signal_type)
        return PENDING if key in self._pending else ABSENT

    def stats(self) -> Dict:
        by_strategy: Dict[str, int] = {}
        for pending in self._pending.values():
            by_strategy[pending.strategy] = by_strategy.get(pending.strategy, 0) + 1
        return {
            'total_pending': len(self._pending),
            'by_strategy': by_strategy,
        }

    def cleanup(self) -> None:
        for pending in self._pending.values():
            self.scheduler.cancel(pending.timer)
        self._pending.clear()
        metrics.update_pending_signals(0)
        logger.info("Signal debouncer cleaned up")

    def __len__(self) -> int:
        return len(self._pending)
