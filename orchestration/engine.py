import asyncio
import logging
from typing import Dict, List, Optional

from analytics.history import HistoryStore
from analytics.indicators import IndicatorCalculator, IndicatorSnapshot
from api.export import WebhookExportSink
from api.metrics import metrics
from config.utils import get_config_section
from monitoring.signal_auditor import SignalAuditor
from orchestration.dispatcher import ComputationDispatcher
from orchestration.persistence import PersistenceFacade, build_sink
from orchestration.scheduler import Clock, Scheduler, SystemClock
from strategy.signal_debouncer import SignalDebouncer
from strategy.signal_manager import TradingSignal
from strategy.strategies import StrategyEvaluator, StrategyResult


logger = logging.getLogger(__name__)


class SignalEngine:
    """Owns all per-instrument state and coordinates tick processing.

    Ticks are applied to the history store on the event loop, then indicator
    computation is handed to the dispatcher. When a snapshot comes back the
    strategies are evaluated and every admitted result goes through the
    debouncer before being persisted.
    """

    def __init__(
        self,
        config_obj=None,
        clock: Optional[Clock] = None,
        history: Optional[HistoryStore] = None,
        calculator: Optional[IndicatorCalculator] = None,
        evaluator: Optional[StrategyEvaluator] = None,
        scheduler: Optional[Scheduler] = None,
        debouncer: Optional[SignalDebouncer] = None,
        dispatcher: Optional[ComputationDispatcher] = None,
        persistence: Optional[PersistenceFacade] = None,
        auditor: Optional[SignalAuditor] = None,
    ):
        self.config = config_obj or {}
        self.engine_cfg = get_config_section(self.config, 'engine')

        self.clock = clock or SystemClock()
        self.scheduler = scheduler or Scheduler(self.clock)
        self.history = history or HistoryStore(int(self.engine_cfg.get('history_capacity', 100)))
        self.calculator = calculator or IndicatorCalculator.from_config(
            get_config_section(self.config, 'indicators')
        )
        self.evaluator = evaluator or StrategyEvaluator(get_config_section(self.config, 'strategies'))
        self.debouncer = debouncer or SignalDebouncer.from_config(
            self.scheduler, get_config_section(self.config, 'debouncer')
        )
        self.dispatcher = dispatcher or ComputationDispatcher.from_config(
            get_config_section(self.config, 'dispatcher')
        )
        if persistence is None:
            persistence = PersistenceFacade(
                build_sink(get_config_section(self.config, 'persistence')),
                export_sink=WebhookExportSink.from_config(get_config_section(self.config, 'export')),
                clock=self.clock,
            )
        self.persistence = persistence
        self.auditor = auditor

        self.latest_snapshots: Dict[str, IndicatorSnapshot] = {}
        self.accepted_signals = 0
        self.running = False
        self._scheduler_task: Optional[asyncio.Task] = None

    async def start(self, run_timers: bool = True) -> None:
        if self.running:
            return
        await self.dispatcher.start()
        if run_timers:
            self._scheduler_task = asyncio.create_task(self.scheduler.run())
        self.running = True
        logger.info("Signal engine started")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        await self.dispatcher.stop()
        if self._scheduler_task is not None:
            self.scheduler.stop()
            self._scheduler_task.cancel()
            await asyncio.gather(self._scheduler_task, return_exceptions=True)
            self._scheduler_task = None
        self.debouncer.cleanup()
        await self.persistence.flush_exports()
        logger.info("Signal engine stopped")

    async def __aenter__(self) -> 'SignalEngine':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def on_tick(
        self,
        instrument: str,
        price: float,
        volume: float,
        open_interest: float = 0.0,
        timestamp: Optional[int] = None,
    ) -> Optional[asyncio.Future]:
        if price is None or price <= 0:
            logger.debug("Ignoring non-positive price for %s: %s", instrument, price)
            return None
        if timestamp is None:
            timestamp = self.clock.now_ms()

        self.scheduler.run_due()
        self.history.update(instrument, price, volume, open_interest)
        metrics.record_tick(instrument, price)

        history_slice = self.history.slice(instrument, int(timestamp))
        return self.dispatcher.submit(
            instrument,
            self.calculator.compute,
            history_slice,
            self.process_snapshot,
        )

    async def process_snapshot(self, snapshot: IndicatorSnapshot) -> List[TradingSignal]:
        self.latest_snapshots[snapshot.instrument] = snapshot
        metrics.update_indicators(snapshot.instrument, snapshot.rsi, snapshot.cvd)

        accepted = []
        for result in self.evaluator.admitted(snapshot):
            signal = await self._admit(snapshot, result)
            if signal is not None:
                accepted.append(signal)
        return accepted

    async def _admit(self, snapshot: IndicatorSnapshot, result: StrategyResult) -> Optional[TradingSignal]:
        allowed = self.debouncer.should_process(
            snapshot.instrument,
            result.strategy,
            result.signal_type,
            snapshot.timestamp,
        )
        if not allowed:
            if self.auditor is not None:
                self.auditor.record_decision(snapshot, result, accepted=False)
            return None

        metrics.record_signal_admitted(result.strategy)
        signal = TradingSignal(
            instrument=snapshot.instrument,
            strategy=result.strategy,
            signal_type=result.signal_type,
            timestamp=snapshot.timestamp,
            entry_price=result.entry_price,
            take_profit=result.take_profit,
            stop_loss=result.stop_loss,
            indicators=snapshot.subset(),
            conditions=dict(result.conditions),
        )
        self.accepted_signals += 1
        # Debouncer state is consumed even when the write fails
        saved = await self.persistence.save_signal(signal)
        if self.auditor is not None:
            self.auditor.record_decision(snapshot, result, accepted=True, persisted=saved.ok)
        return signal

    async def drain(self) -> None:
        await self.dispatcher.drain()
        await self.persistence.flush_exports()

    def stats(self) -> Dict:
        return {
            'instruments': len(self.history),
            'accepted_signals': self.accepted_signals,
            'debouncer': self.debouncer.stats(),
            'dispatcher': self.dispatcher.stats(),
        }

    @classmethod
    def from_config(cls, config_obj, clock: Optional[Clock] = None) -> 'SignalEngine':
        monitoring_cfg = get_config_section(config_obj, 'monitoring')
        audit_path = monitoring_cfg.get('decision_audit_log')
        auditor = SignalAuditor(audit_path) if audit_path else None
        return cls(config_obj, clock=clock, auditor=auditor)
