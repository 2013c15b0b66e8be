from concurrent.futures import Executor, Future

import cv2
import numpy as np
import pytest

from ward_monitor.errors import PixelAccessError
from ward_monitor.utils.scheduler import Scheduler


class FakeClock:
    def __init__(self, t=0.0):
        self.t = float(t)

    def __call__(self):
        return self.t


class FakeSource:
    """In-memory frame source; tests set ``frame`` / ``pos`` and fire events."""

    def __init__(self, source_id="cam-test", width=360, height=240, clock=None):
        self.source_id = source_id
        self.width = width
        self.height = height
        self.clock = clock
        self.frame = np.full((height, width, 3), 128, dtype=np.uint8)
        self.pos = 0.0
        self.playing = True
        self.pixels = True
        self.listeners = []
        self.closed = False

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def fire(self, event, **info):
        for fn in list(self.listeners):
            fn(event, info)

    def position(self):
        if self.clock is not None and self.playing:
            return self.clock()
        return self.pos

    def is_playing(self):
        return self.playing

    def read_frame(self, size=None):
        if not self.pixels:
            raise PixelAccessError("tainted")
        if self.frame is None:
            return None
        if size is not None:
            return cv2.resize(self.frame, tuple(size), interpolation=cv2.INTER_AREA)
        return self.frame.copy()

    def close(self):
        self.closed = True


class FakeDetector:
    """Returns scripted detection lists, repeating the last one."""

    def __init__(self, script=None, error=None):
        self.script = list(script or [[]])
        self.error = error
        self.calls = 0
        self.frames = []

    def detect(self, frame):
        self.calls += 1
        self.frames.append(frame.shape)
        if self.error:
            raise self.error
        idx = min(self.calls - 1, len(self.script) - 1)
        return self.script[idx]


class SyncExecutor(Executor):
    def submit(self, fn, *args, **kwargs):
        f = Future()
        try:
            f.set_result(fn(*args, **kwargs))
        except Exception as e:
            f.set_exception(e)
        return f


class DeferredExecutor(Executor):
    """Holds submitted work until ``run_all`` so a call can stay in flight."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        f = Future()
        self.jobs.append((f, fn, args, kwargs))
        return f

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for f, fn, args, kwargs in jobs:
            try:
                f.set_result(fn(*args, **kwargs))
            except Exception as e:
                f.set_exception(e)


def person(x, y, w, h, score=0.9):
    return {"class_name": "person", "score": score, "x": x, "y": y, "width": w, "height": h}


def run_for(scheduler, clock, seconds, step=0.05):
    end = clock.t + seconds
    while clock.t < end - 1e-9:
        clock.t = round(clock.t + step, 6)
        scheduler.run_pending()
    # drain work handed over with call_soon during the last step
    scheduler.run_pending()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock=clock)


@pytest.fixture
def source(clock):
    return FakeSource()
