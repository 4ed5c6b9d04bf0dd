import asyncio
import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from api.metrics import metrics

logger = logging.getLogger(__name__)

Computation = Callable[[Any], Any]
ResultCallback = Callable[[Any], Awaitable[None]]


@dataclass
class ComputationRequest:
    request_id: int
    instrument: str
    compute: Computation
    payload: Any
    callback: Optional[ResultCallback]
    future: asyncio.Future
    submitted_at: float = field(default_factory=time.monotonic)


class ComputationDispatcher:
    """Fixed pool of computation workers with one outstanding request per instrument.

    Each worker owns a request queue and requests are assigned round-robin.
    While an instrument has a computation outstanding, newer requests for it
    are parked; a parked request is replaced by any later one (its future is
    cancelled and its callback never runs). The parked request is dispatched
    once the outstanding one has finished, so per-instrument work stays FIFO.

    The computation itself runs on a thread pool. Exceptions from the
    computation or its callback are logged and counted; the request's future
    then resolves to ``None``.
    """

    def __init__(self, workers: int = 4, executor: Optional[ThreadPoolExecutor] = None):
        if workers < 1:
            raise ValueError("Dispatcher needs at least one worker")
        self.worker_count = workers
        self._executor = executor
        self._owns_executor = executor is None
        self._queues: List[asyncio.Queue] = []
        self._tasks: List[asyncio.Task] = []
        self._next_worker = 0
        self._ids = itertools.count(1)
        self._futures: Dict[int, asyncio.Future] = {}
        self._outstanding: Dict[str, ComputationRequest] = {}
        self._parked: Dict[str, ComputationRequest] = {}
        self._idle: Optional[asyncio.Event] = None
        self.completed = 0
        self.failed = 0
        self.dropped = 0

    @classmethod
    def from_config(cls, dispatcher_cfg: Optional[Dict] = None) -> 'ComputationDispatcher':
        cfg = dispatcher_cfg or {}
        return cls(workers=int(cfg.get('workers', 4)))

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.worker_count,
                thread_name_prefix='indicator-worker',
            )
        self._idle = asyncio.Event()
        self._idle.set()
        self._queues = [asyncio.Queue() for _ in range(self.worker_count)]
        self._tasks = [
            asyncio.create_task(self._worker_loop(index, queue))
            for index, queue in enumerate(self._queues)
        ]
        logger.info("Started %d indicator workers", self.worker_count)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        for future in self._futures.values():
            if not future.done():
                future.cancel()
        self._futures.clear()
        self._outstanding.clear()
        self._parked.clear()
        if self._idle is not None:
            self._idle.set()
        metrics.update_inflight(0)
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        logger.info("Stopped indicator workers")

    def submit(
        self,
        instrument: str,
        compute: Computation,
        payload: Any,
        callback: Optional[ResultCallback] = None,
    ) -> asyncio.Future:
        if not self._tasks:
            raise RuntimeError("Dispatcher is not running")
        loop = asyncio.get_running_loop()
        request = ComputationRequest(
            request_id=next(self._ids),
            instrument=instrument,
            compute=compute,
            payload=payload,
            callback=callback,
            future=loop.create_future(),
        )
        self._futures[request.request_id] = request.future
        self._idle.clear()

        if instrument in self._outstanding:
            superseded = self._parked.pop(instrument, None)
            if superseded is not None:
                self._drop(superseded)
            self._parked[instrument] = request
        else:
            self._enqueue(request)
        return request.future

    def _enqueue(self, request: ComputationRequest) -> None:
        self._outstanding[request.instrument] = request
        queue = self._queues[self._next_worker]
        self._next_worker = (self._next_worker + 1) % len(self._queues)
        queue.put_nowait(request)
        metrics.update_inflight(len(self._outstanding))

    def _drop(self, request: ComputationRequest) -> None:
        self.dropped += 1
        metrics.record_computation_dropped(request.instrument)
        self._futures.pop(request.request_id, None)
        if not request.future.done():
            request.future.cancel()
        logger.debug("Dropped superseded computation %d for %s", request.request_id, request.instrument)

    async def _worker_loop(self, worker_id: int, queue: asyncio.Queue) -> None:
        loop = asyncio.get_running_loop()
        while True:
            request: ComputationRequest = await queue.get()
            try:
                await self._run(loop, worker_id, request)
            finally:
                queue.task_done()
                self._finish(request)

    async def _run(self, loop, worker_id: int, request: ComputationRequest) -> None:
        result = None
        try:
            result = await loop.run_in_executor(self._executor, request.compute, request.payload)
            metrics.record_computation(request.instrument, time.monotonic() - request.submitted_at)
            if request.callback is not None:
                await request.callback(result)
            self.completed += 1
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception:
            self.failed += 1
            result = None
            metrics.record_computation_failure(request.instrument)
            logger.exception(
                "Computation %d for %s failed on worker %d",
                request.request_id, request.instrument, worker_id,
            )
        if not request.future.done():
            request.future.set_result(result)

    def _finish(self, request: ComputationRequest) -> None:
        self._futures.pop(request.request_id, None)
        if self._outstanding.get(request.instrument) is request:
            del self._outstanding[request.instrument]
        parked = self._parked.pop(request.instrument, None)
        if parked is not None and self._tasks:
            self._enqueue(parked)
        metrics.update_inflight(len(self._outstanding))
        if not self._outstanding and not self._parked and self._idle is not None:
            self._idle.set()

    async def drain(self) -> None:
        if self._idle is not None:
            await self._idle.wait()

    def is_busy(self, instrument: str) -> bool:
        return instrument in self._outstanding

    def stats(self) -> Dict:
        return {
            'workers': self.worker_count,
            'outstanding': len(self._outstanding),
            'parked': len(self._parked),
            'completed': self.completed,
            'failed': self.failed,
            'dropped': self.dropped,
        }
