import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Clock:
    """Millisecond wall clock."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class SystemClock(Clock):
    pass


class VirtualClock(Clock):
    """Manually advanced clock for deterministic timer tests and replays."""

    def __init__(self, start_ms: int = 0):
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def advance(self, delta_ms: int) -> int:
        if delta_ms < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now += int(delta_ms)
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = max(self._now, int(now_ms))


@dataclass(order=True)
class TimerHandle:
    deadline_ms: int
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)
    fired: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


class Scheduler:
    """Delay queue of one-shot timers driven by an injectable clock.

    ``run_due`` fires every timer whose deadline has passed; the engine calls
    it before acting on new input, and ``run`` drives it in real time.
    """

    def __init__(self, clock: Optional[Clock] = None, poll_interval_s: float = 0.25):
        self.clock = clock or SystemClock()
        self.poll_interval_s = poll_interval_s
        self._queue: List[TimerHandle] = []
        self._seq = itertools.count()
        self._running = False

    def schedule(self, delay_ms: int, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(
            deadline_ms=self.clock.now_ms() + max(0, int(delay_ms)),
            seq=next(self._seq),
            callback=callback,
        )
        heapq.heappush(self._queue, handle)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None:
            return
        handle.cancel()
        try:
            self._queue.remove(handle)
        except ValueError:
            return
        heapq.heapify(self._queue)

    def run_due(self) -> int:
        now = self.clock.now_ms()
        fired = 0
        while self._queue and self._queue[0].deadline_ms <= now:
            handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            handle.fired = True
            fired += 1
            try:
                handle.callback()
            except Exception:
                logger.exception("Timer callback failed")
        return fired

    def next_deadline(self) -> Optional[int]:
        self._compact()
        return self._queue[0].deadline_ms if self._queue else None

    def clear(self) -> None:
        for handle in self._queue:
            handle.cancel()
        self._queue.clear()

    def _compact(self) -> None:
        while self._queue and self._queue[0].cancelled:
            heapq.heappop(self._queue)

    async def run(self) -> None:
        self._running = True
        try:
            while self._running:
                self.run_due()
                deadline = self.next_deadline()
                delay = self.poll_interval_s
                if deadline is not None:
                    delay = min(delay, max(0.0, (deadline - self.clock.now_ms()) / 1000.0))
                await asyncio.sleep(delay)
        finally:
            self._running = False

    def stop(self) -> None:
        self._running = False

    def __len__(self) -> int:
        return sum(1 for handle in self._queue if not handle.cancelled)
