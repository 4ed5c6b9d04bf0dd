import asyncio
import sys
import threading

sys.path.insert(0, '.')

import pytest

from orchestration.dispatcher import ComputationDispatcher


def test_submit_requires_running_dispatcher():
    async def _run():
        dispatcher = ComputationDispatcher(workers=2)
        with pytest.raises(RuntimeError):
            dispatcher.submit('BTCUSDT', lambda x: x, 1)

    asyncio.run(_run())


def test_results_are_delivered_to_callbacks():
    async def _run():
        dispatcher = ComputationDispatcher(workers=4)
        await dispatcher.start()
        received = []

        async def on_result(result):
            received.append(result)

        try:
            futures = [
                dispatcher.submit(symbol, lambda x: x * 2, value, on_result)
                for symbol, value in (('BTCUSDT', 1), ('ETHUSDT', 2), ('SOLUSDT', 3))
            ]
            results = await asyncio.gather(*futures)
            await dispatcher.drain()
        finally:
            await dispatcher.stop()
        assert results == [2, 4, 6]
        assert sorted(received) == [2, 4, 6]
        assert dispatcher.stats()['completed'] == 3

    asyncio.run(_run())


def test_latest_request_wins_while_instrument_is_busy():
    async def _run():
        gate = threading.Event()
        dispatcher = ComputationDispatcher(workers=2)
        await dispatcher.start()
        received = []

        def work(payload):
            if payload == 'first':
                gate.wait(5)
            return payload

        async def on_result(result):
            received.append(result)

        try:
            first = dispatcher.submit('BTCUSDT', work, 'first', on_result)
            second = dispatcher.submit('BTCUSDT', work, 'second', on_result)
            third = dispatcher.submit('BTCUSDT', work, 'third', on_result)
            assert second.cancelled()
            assert dispatcher.is_busy('BTCUSDT')
            assert dispatcher.stats()['parked'] == 1
            gate.set()
            await dispatcher.drain()
        finally:
            gate.set()
            await dispatcher.stop()

        assert first.result() == 'first'
        assert third.result() == 'third'
        assert received == ['first', 'third']
        assert dispatcher.stats()['dropped'] == 1

    asyncio.run(_run())


def test_other_instruments_are_not_blocked():
    async def _run():
        gate = threading.Event()
        dispatcher = ComputationDispatcher(workers=2)
        await dispatcher.start()

        def work(payload):
            if payload == 'slow':
                gate.wait(5)
            return payload

        try:
            slow = dispatcher.submit('BTCUSDT', work, 'slow')
            fast = dispatcher.submit('ETHUSDT', work, 'fast')
            assert await asyncio.wait_for(fast, timeout=5) == 'fast'
            assert not slow.done()
            gate.set()
            assert await asyncio.wait_for(slow, timeout=5) == 'slow'
        finally:
            gate.set()
            await dispatcher.stop()

    asyncio.run(_run())


def test_computation_failures_are_isolated():
    async def _run():
        dispatcher = ComputationDispatcher(workers=2)
        await dispatcher.start()
        received = []

        def work(payload):
            if payload == 'boom':
                raise ValueError('bad slice')
            return payload

        async def on_result(result):
            received.append(result)

        try:
            failed = dispatcher.submit('BTCUSDT', work, 'boom', on_result)
            ok = dispatcher.submit('ETHUSDT', work, 'fine', on_result)
            assert await failed is None
            assert await ok == 'fine'
            again = dispatcher.submit('BTCUSDT', work, 'recovered', on_result)
            assert await again == 'recovered'
            await dispatcher.drain()
        finally:
            await dispatcher.stop()

        assert sorted(received) == ['fine', 'recovered']
        assert dispatcher.stats()['failed'] == 1

    asyncio.run(_run())


def test_callback_failures_are_contained():
    async def _run():
        dispatcher = ComputationDispatcher(workers=1)
        await dispatcher.start()

        async def broken(result):
            raise RuntimeError('downstream failed')

        try:
            future = dispatcher.submit('BTCUSDT', lambda x: x, 7, broken)
            assert await future is None
            follow_up = dispatcher.submit('BTCUSDT', lambda x: x + 1, 7)
            assert await follow_up == 8
        finally:
            await dispatcher.stop()
        assert dispatcher.stats()['failed'] == 1

    asyncio.run(_run())


def test_per_instrument_order_is_preserved():
    async def _run():
        dispatcher = ComputationDispatcher(workers=4)
        await dispatcher.start()
        received = []

        async def on_result(result):
            received.append(result)

        try:
            for value in range(10):
                future = dispatcher.submit('BTCUSDT', lambda x: x, value, on_result)
                await future
        finally:
            await dispatcher.stop()
        assert received == list(range(10))

    asyncio.run(_run())
