import asyncio
import copy
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set

from api.metrics import metrics
from strategy.signal_manager import SignalType, TradingSignal


logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class PersistenceError(RuntimeError):
    pass


@dataclass
class SignalFilter:
    instrument: Optional[str] = None
    strategy: Optional[str] = None
    signal_type: Optional[SignalType] = None
    active_only: bool = False
    signal_id: Optional[str] = None

    def matches(self, signal: TradingSignal) -> bool:
        if self.signal_id is not None and signal.signal_id != self.signal_id:
            return False
        if self.instrument is not None and signal.instrument != self.instrument:
            return False
        if self.strategy is not None and signal.strategy != self.strategy:
            return False
        if self.signal_type is not None and signal.signal_type != SignalType(self.signal_type):
            return False
        if self.active_only and not (signal.active and not signal.executed):
            return False
        return True


@dataclass
class PersistenceResult:
    ok: bool
    signal_id: Optional[str] = None
    error: Optional[str] = None


class SignalSink(ABC):
    """Storage backend for persisted signals. Implementations raise on failure."""

    @abstractmethod
    async def append(self, signal: TradingSignal) -> None:
        pass

    @abstractmethod
    async def query(self, signal_filter: Optional[SignalFilter] = None) -> List[TradingSignal]:
        pass

    @abstractmethod
    async def update(self, signal: TradingSignal) -> None:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemorySignalSink(SignalSink):
    """Newest-first list capped at ``capacity``; the oldest records fall off.

    Records are copied on the way in and out so stored signals only change
    through ``update``.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = capacity
        self._signals: List[TradingSignal] = []

    async def append(self, signal: TradingSignal) -> None:
        self._signals.insert(0, copy.deepcopy(signal))
        if len(self._signals) > self.capacity:
            del self._signals[self.capacity:]

    async def query(self, signal_filter: Optional[SignalFilter] = None) -> List[TradingSignal]:
        signal_filter = signal_filter or SignalFilter()
        return [copy.deepcopy(s) for s in self._signals if signal_filter.matches(s)]

    async def update(self, signal: TradingSignal) -> None:
        for index, existing in enumerate(self._signals):
            if existing.signal_id == signal.signal_id:
                self._signals[index] = copy.deepcopy(signal)
                return
        raise PersistenceError(f"Signal {signal.signal_id} not found")

    async def clear(self) -> None:
        self._signals.clear()

    def __len__(self) -> int:
        return len(self._signals)


class JsonFileSignalSink(InMemorySignalSink):
    """In-memory sink that rewrites a JSON snapshot file after every mutation."""

    def __init__(self, path, capacity: int = DEFAULT_CAPACITY):
        super().__init__(capacity)
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Unreadable signal store {self.path}: {exc}") from exc
        self._signals = [TradingSignal.from_dict(item) for item in data.get('signals', [])][:self.capacity]
        logger.info("Restored %d signals from %s", len(self._signals), self.path)

    def _write(self) -> None:
        payload = {
            'signals': [s.to_dict() for s in self._signals],
            'last_update': int(time.time() * 1000),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(payload))
        except OSError as exc:
            raise PersistenceError(f"Failed to write signal store {self.path}: {exc}") from exc

    def _commit(self, previous: List[TradingSignal]) -> None:
        try:
            self._write()
        except PersistenceError:
            # Keep memory in step with the last snapshot that reached disk
            self._signals = previous
            raise

    async def append(self, signal: TradingSignal) -> None:
        previous = list(self._signals)
        await super().append(signal)
        self._commit(previous)

    async def update(self, signal: TradingSignal) -> None:
        previous = list(self._signals)
        await super().update(signal)
        self._commit(previous)

    async def clear(self) -> None:
        previous = list(self._signals)
        await super().clear()
        self._commit(previous)


class PersistenceFacade:
    """Signal history API over a pluggable sink, with optional best-effort export.

    Sink errors never propagate: they are logged and reported through a failed
    ``PersistenceResult`` (or an empty query result). Exports run as background
    tasks after a successful append.
    """

    def __init__(self, sink: Optional[SignalSink] = None, export_sink=None, clock=None):
        self.sink = sink if sink is not None else InMemorySignalSink()
        self.export_sink = export_sink
        self.clock = clock
        self._export_tasks: Set[asyncio.Task] = set()

    def _now_ms(self) -> int:
        if self.clock is not None:
            return self.clock.now_ms()
        return int(time.time() * 1000)

    async def save_signal(self, signal: TradingSignal) -> PersistenceResult:
        try:
            await self.sink.append(signal)
        except Exception as exc:
            metrics.record_persistence_failure('append')
            logger.error("Failed to persist signal %s: %s", signal.signal_id, exc)
            return PersistenceResult(ok=False, signal_id=signal.signal_id, error=str(exc))

        metrics.record_signal_persisted()
        logger.info(
            "Saved %s signal for %s (%s)",
            signal.signal_type.value, signal.instrument, signal.strategy,
        )
        if self.export_sink is not None:
            task = asyncio.create_task(self._export(signal))
            self._export_tasks.add(task)
            task.add_done_callback(self._export_tasks.discard)
        return PersistenceResult(ok=True, signal_id=signal.signal_id)

    async def _export(self, signal: TradingSignal) -> bool:
        try:
            success = bool(await self.export_sink.export(signal))
        except Exception as exc:
            logger.error("Failed to export signal %s: %s", signal.signal_id, exc)
            success = False
        metrics.record_export(success)
        if not success:
            logger.warning("Export of signal %s did not succeed", signal.signal_id)
        return success

    async def flush_exports(self) -> None:
        if self._export_tasks:
            await asyncio.gather(*list(self._export_tasks), return_exceptions=True)

    async def query(self, signal_filter: Optional[SignalFilter] = None) -> List[TradingSignal]:
        try:
            return await self.sink.query(signal_filter)
        except Exception as exc:
            metrics.record_persistence_failure('query')
            logger.error("Signal query failed: %s", exc)
            return []

    async def get_active_signals(self) -> List[TradingSignal]:
        return await self.query(SignalFilter(active_only=True))

    async def get_signals_by_instrument(self, instrument: str) -> List[TradingSignal]:
        return await self.query(SignalFilter(instrument=instrument))

    async def get_signals_by_strategy(self, strategy: str) -> List[TradingSignal]:
        return await self.query(SignalFilter(strategy=strategy))

    async def get_signal(self, signal_id: str) -> Optional[TradingSignal]:
        matches = await self.query(SignalFilter(signal_id=signal_id))
        return matches[0] if matches else None

    async def _transition(self, signal_id: str, operation: str, mutate) -> PersistenceResult:
        try:
            matches = await self.sink.query(SignalFilter(signal_id=signal_id))
            if not matches:
                return PersistenceResult(ok=False, signal_id=signal_id, error='not found')
            # Sinks may hand back live records; only the committed copy changes
            signal = copy.deepcopy(matches[0])
            mutate(signal)
            await self.sink.update(signal)
        except Exception as exc:
            metrics.record_persistence_failure(operation)
            logger.error("Failed to %s signal %s: %s", operation, signal_id, exc)
            return PersistenceResult(ok=False, signal_id=signal_id, error=str(exc))
        return PersistenceResult(ok=True, signal_id=signal_id)

    async def deactivate_signal(self, signal_id: str) -> PersistenceResult:
        result = await self._transition(signal_id, 'deactivate', lambda s: s.deactivate())
        if result.ok:
            logger.info("Deactivated signal %s", signal_id)
        return result

    async def mark_signal_executed(self, signal_id: str, execution_price: float) -> PersistenceResult:
        executed_at = self._now_ms()
        result = await self._transition(
            signal_id,
            'mark_executed',
            lambda s: s.mark_executed(execution_price, executed_at),
        )
        if result.ok:
            logger.info("Marked signal %s as executed at %s", signal_id, execution_price)
        return result

    async def clear_history(self) -> PersistenceResult:
        try:
            await self.sink.clear()
        except Exception as exc:
            metrics.record_persistence_failure('clear')
            logger.error("Failed to clear signal history: %s", exc)
            return PersistenceResult(ok=False, error=str(exc))
        logger.info("Cleared signal history")
        return PersistenceResult(ok=True)

    async def export_history(self) -> str:
        signals = await self.query()
        return json.dumps({
            'signals': [s.to_dict() for s in signals],
            'exported_at': self._now_ms(),
            'total_signals': len(signals),
        }, indent=2)


def build_sink(persistence_cfg: Optional[Dict] = None) -> SignalSink:
    cfg = persistence_cfg or {}
    capacity = int(cfg.get('capacity', DEFAULT_CAPACITY))
    path = cfg.get('path')
    if path:
        return JsonFileSignalSink(path, capacity=capacity)
    return InMemorySignalSink(capacity=capacity)
