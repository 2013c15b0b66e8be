import numpy as np
import pytest

from ward_monitor.features.scene import SceneProbe
from tests.conftest import run_for

W, H = 96, 54


def blank(v=0):
    return np.full((H, W, 3), v, dtype=np.uint8)


@pytest.fixture
def readings():
    return []


@pytest.fixture
def probe(source, scheduler, readings):
    source.frame = blank()
    p = SceneProbe(source, readings.append, scheduler)
    p.attach()
    return p


def test_first_sample_is_unknown(probe, readings):
    probe.sample()
    r = readings[0]
    assert (r.people_band, r.motion, r.pixels_readable) == ("unknown", 0.0, True)


def test_identical_frames_mean_empty(probe, readings):
    probe.sample()
    probe.sample()
    assert readings[-1].people_band == "none"
    assert readings[-1].motion == pytest.approx(0.0)


def test_small_change_is_few(probe, source, readings):
    probe.sample()
    frame = blank()
    frame[20:30, 20:30] = 255
    source.frame = frame
    probe.sample()
    assert readings[-1].people_band == "few"
    assert 0.0 < readings[-1].motion < 0.05


def test_many_active_cells_is_crowd(probe, source, readings):
    probe.sample()
    frame = blank()
    frame[0:13, :] = 255      # whole top row of cells
    frame[13:26, 0:32] = 255  # two more cells
    source.frame = frame
    probe.sample()
    assert readings[-1].people_band == "crowd"


def test_full_change_is_full_motion(probe, source, readings):
    probe.sample()
    source.frame = blank(255)
    probe.sample()
    assert readings[-1].motion == pytest.approx(1.0)
    assert readings[-1].people_band == "crowd"


def test_samples_on_interval(probe, scheduler, clock, readings):
    run_for(scheduler, clock, 2.0)
    assert [r.people_band for r in readings] == ["unknown", "none"]


def test_pixel_failure_reports_once_and_stops(probe, source, scheduler, clock, readings):
    source.pixels = False
    run_for(scheduler, clock, 5.0)
    assert len(readings) == 1
    assert readings[0].pixels_readable is False
    assert readings[0].people_band == "unknown"
    assert scheduler.pending() == 0


def test_no_frame_yet_is_skipped(probe, source, readings):
    source.frame = None
    probe.sample()
    assert readings == []


def test_detach_stops_sampling(probe, scheduler, clock, readings):
    probe.detach()
    run_for(scheduler, clock, 3.0)
    assert readings == []
