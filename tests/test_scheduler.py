import threading

from ward_monitor.utils.scheduler import Scheduler
from tests.conftest import FakeClock, run_for


def test_call_every_and_cancel():
    clock = FakeClock()
    s = Scheduler(clock=clock)
    hits = []
    h = s.call_every(0.4, lambda: hits.append(clock.t))
    run_for(s, clock, 1.3)
    assert len(hits) == 3
    h.cancel()
    run_for(s, clock, 2.0)
    assert len(hits) == 3
    assert s.pending() == 0


def test_call_later_runs_once():
    clock = FakeClock()
    s = Scheduler(clock=clock)
    hits = []
    s.call_later(0.5, lambda: hits.append(1))
    run_for(s, clock, 2.0)
    assert hits == [1]


def test_failing_callback_keeps_other_timers_running():
    clock = FakeClock()
    s = Scheduler(clock=clock)
    hits = []

    def boom():
        raise ValueError("source fault")

    s.call_every(0.2, boom)
    s.call_every(0.2, lambda: hits.append(1))
    run_for(s, clock, 1.1)
    assert len(hits) == 5


def test_call_soon_from_another_thread():
    clock = FakeClock()
    s = Scheduler(clock=clock)
    got = []
    t = threading.Thread(target=s.call_soon, args=(got.append, "x"))
    t.start()
    t.join()
    assert got == []
    s.run_pending()
    assert got == ["x"]


def test_run_forever_stops():
    s = Scheduler(idle_sleep=0.01)
    hits = []
    s.call_every(0.01, lambda: hits.append(1))
    s.call_later(0.05, s.stop)
    t = threading.Thread(target=s.run_forever)
    t.start()
    t.join(timeout=2.0)
    assert not t.is_alive()
    assert hits
