#!/usr/bin/env python
"""
End-to-end tests - ticks through indicators, strategies, debouncer and persistence
"""
import asyncio
import sys
from dataclasses import replace

sys.path.insert(0, '.')

import pytest

from orchestration.engine import SignalEngine
from orchestration.persistence import PersistenceError, PersistenceFacade, InMemorySignalSink
from orchestration.scheduler import VirtualClock
from strategy.signal_debouncer import ABSENT, PENDING
from strategy.signal_manager import SignalType

T0 = 1_700_000_000_000

ENGINE_CONFIG = {
    'dispatcher': {'workers': 4},
    'debouncer': {'duplicate_window_ms': 10_000, 'debounce_ms': 5_000},
    # A strictly rising feed pins RSI at 100
    'strategies': {'pump': {'rsi_max': 101}},
}


def pump_ticks(count=30):
    """Strictly rising prices with a volume burst on the final tick."""
    ticks = []
    for i in range(count):
        ticks.append({
            'instrument': 'BTCUSDT',
            'price': 100.0 + i,
            'volume': 1000.0 if i == count - 1 else 100.0,
            'timestamp': T0 + i * 1_000,
        })
    return ticks


async def _feed(engine, clock, ticks):
    for tick in ticks:
        clock.set(tick['timestamp'])
        future = await engine.on_tick(**tick)
        await future
    await engine.drain()


class FailingSink(InMemorySignalSink):
    async def append(self, signal):
        raise PersistenceError('store offline')


def test_pump_signal_end_to_end():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(ENGINE_CONFIG, clock=clock)
        await engine.start(run_timers=False)
        try:
            await _feed(engine, clock, pump_ticks())
            signals = await engine.persistence.query()
        finally:
            await engine.stop()

        assert len(signals) == 1
        signal = signals[0]
        assert signal.instrument == 'BTCUSDT'
        assert signal.strategy == 'pump'
        assert signal.signal_type == SignalType.LONG
        assert signal.entry_price == 129.0
        assert signal.take_profit == pytest.approx(129.0 * 1.03)
        assert signal.stop_loss == pytest.approx(129.0 * 0.99)
        assert signal.timestamp == T0 + 29_000
        assert signal.signal_id == f"BTCUSDT_pump_{T0 + 29_000}"
        assert signal.indicators['volume_spike'] is True
        assert all(signal.conditions.values())

        snapshot = engine.latest_snapshots['BTCUSDT']
        assert snapshot.avg_volume == pytest.approx(145.0)
        assert snapshot.rsi == 100.0

    asyncio.run(_run())


def test_default_pump_band_rejects_saturated_rsi():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine({'dispatcher': {'workers': 2}}, clock=clock)
        await engine.start(run_timers=False)
        try:
            await _feed(engine, clock, pump_ticks())
            signals = await engine.persistence.query()
        finally:
            await engine.stop()
        assert signals == []

    asyncio.run(_run())


def test_repeat_admission_inside_window_persists_once():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(ENGINE_CONFIG, clock=clock)
        await engine.start(run_timers=False)
        try:
            await _feed(engine, clock, pump_ticks())
            snapshot = engine.latest_snapshots['BTCUSDT']
            repeat = await engine.process_snapshot(replace(snapshot, timestamp=snapshot.timestamp + 4_000))
            signals = await engine.persistence.query()
        finally:
            await engine.stop()
        assert repeat == []
        assert len(signals) == 1

    asyncio.run(_run())


def test_expired_debounce_admits_again_inside_window():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(ENGINE_CONFIG, clock=clock)
        await engine.start(run_timers=False)
        try:
            await _feed(engine, clock, pump_ticks())
            snapshot = engine.latest_snapshots['BTCUSDT']
            assert engine.debouncer.state('BTCUSDT', 'pump', 'LONG') == PENDING

            clock.advance(5_000)
            assert engine.debouncer.state('BTCUSDT', 'pump', 'LONG') == ABSENT

            again = await engine.process_snapshot(replace(snapshot, timestamp=snapshot.timestamp + 6_000))
            signals = await engine.persistence.query()
        finally:
            await engine.stop()
        assert len(again) == 1
        assert len(signals) == 2

    asyncio.run(_run())


def test_persistence_failure_still_consumes_debouncer_slot():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(
            ENGINE_CONFIG,
            clock=clock,
            persistence=PersistenceFacade(FailingSink(), clock=clock),
        )
        await engine.start(run_timers=False)
        try:
            await _feed(engine, clock, pump_ticks())
            snapshot = engine.latest_snapshots['BTCUSDT']
            assert engine.debouncer.state('BTCUSDT', 'pump', 'LONG') == PENDING
            repeat = await engine.process_snapshot(replace(snapshot, timestamp=snapshot.timestamp + 1_000))
            signals = await engine.persistence.query()
        finally:
            await engine.stop()
        assert repeat == []
        assert signals == []
        assert engine.accepted_signals == 1

    asyncio.run(_run())


def test_non_positive_prices_are_ignored():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(ENGINE_CONFIG, clock=clock)
        await engine.start(run_timers=False)
        try:
            assert await engine.on_tick('BTCUSDT', 0.0, 10.0) is None
            assert await engine.on_tick('BTCUSDT', -5.0, 10.0) is None
        finally:
            await engine.stop()
        assert 'BTCUSDT' not in engine.history

    asyncio.run(_run())


def test_instruments_are_independent():
    async def _run():
        clock = VirtualClock(start_ms=T0)
        engine = SignalEngine(ENGINE_CONFIG, clock=clock)
        await engine.start(run_timers=False)
        try:
            for tick in pump_ticks():
                clock.set(tick['timestamp'])
                btc = await engine.on_tick(**tick)
                eth = await engine.on_tick(**dict(tick, instrument='ETHUSDT', price=tick['price'] * 20))
                await asyncio.gather(btc, eth)
            await engine.drain()
            signals = await engine.persistence.query()
        finally:
            await engine.stop()

        assert sorted(s.instrument for s in signals) == ['BTCUSDT', 'ETHUSDT']
        assert engine.stats()['instruments'] == 2

    asyncio.run(_run())
