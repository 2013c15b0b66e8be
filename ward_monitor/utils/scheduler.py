# ward_monitor/utils/scheduler.py
import heapq
import itertools
import logging
import threading
import time
from collections import deque

log = logging.getLogger(__name__)


class TimerHandle:
    def __init__(self, scheduler, fn, interval, deadline, name):
        self._scheduler = scheduler
        self.fn = fn
        self.interval = interval
        self.deadline = deadline
        self.name = name or getattr(fn, "__name__", "timer")
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class Scheduler:
    """
    Cooperative timer loop. Every timer callback runs on the thread that
    calls run_pending()/run_forever(); other threads hand work over with
    call_soon(). A callback that raises is logged and keeps its schedule,
    so a fault in one source never stalls the others.
    """

    def __init__(self, clock=time.monotonic, idle_sleep=0.05):
        self.clock = clock
        self.idle_sleep = float(idle_sleep)
        self._heap = []
        self._seq = itertools.count()
        self._soon = deque()
        self._soon_lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stop = threading.Event()

    def now(self) -> float:
        return self.clock()

    def call_every(self, interval: float, fn, name=None, initial_delay=None) -> TimerHandle:
        interval = max(1e-3, float(interval))
        first = interval if initial_delay is None else float(initial_delay)
        h = TimerHandle(self, fn, interval, self.clock() + first, name)
        heapq.heappush(self._heap, (h.deadline, next(self._seq), h))
        return h

    def call_later(self, delay: float, fn, name=None) -> TimerHandle:
        h = TimerHandle(self, fn, None, self.clock() + max(0.0, float(delay)), name)
        heapq.heappush(self._heap, (h.deadline, next(self._seq), h))
        return h

    def call_soon(self, fn, *args):
        # safe from any thread
        with self._soon_lock:
            self._soon.append((fn, args))
        self._wakeup.set()

    def _invoke(self, name, fn, *args):
        try:
            fn(*args)
        except Exception:
            log.exception("[scheduler] callback %s failed", name)

    def run_pending(self) -> float:
        """Run everything due now. Returns seconds until the next deadline."""
        while True:
            with self._soon_lock:
                if not self._soon:
                    break
                fn, args = self._soon.popleft()
            self._invoke(getattr(fn, "__name__", "soon"), fn, *args)

        now = self.clock()
        while self._heap and self._heap[0][0] <= now:
            _, _, h = heapq.heappop(self._heap)
            if h.cancelled:
                continue
            self._invoke(h.name, h.fn)
            if h.interval is not None and not h.cancelled:
                h.deadline += h.interval
                if h.deadline <= now:
                    h.deadline = now + h.interval
                heapq.heappush(self._heap, (h.deadline, next(self._seq), h))
            now = self.clock()

        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        if not self._heap:
            return self.idle_sleep
        return max(0.0, self._heap[0][0] - self.clock())

    def run_forever(self):
        self._stop.clear()
        while not self._stop.is_set():
            delay = self.run_pending()
            self._wakeup.wait(timeout=min(delay, self.idle_sleep))
            self._wakeup.clear()

    def stop(self):
        self._stop.set()
        self._wakeup.set()

    def pending(self) -> int:
        return sum(1 for _, _, h in self._heap if not h.cancelled)
