import itertools
from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from ward_monitor.errors import PixelAccessError
from ward_monitor.utils import capture
from ward_monitor.utils.capture import CaptureSource

FRAME = np.zeros((240, 320, 3), dtype=np.uint8)


class FakeCapture:
    """Scripted VideoCapture: None is a failed read, an exception is raised."""

    def __init__(self, script=(), opened=True, props=None):
        self.script = list(script)
        self.opened = opened
        self.props = {cv2.CAP_PROP_FRAME_WIDTH: 320, cv2.CAP_PROP_FRAME_HEIGHT: 240}
        self.props.update(props or {})
        self.sets = []
        self.released = False
        self.on_end = None

    def isOpened(self):
        return self.opened

    def get(self, prop):
        return self.props.get(prop, 0)

    def set(self, prop, value):
        self.sets.append((prop, value))
        return True

    def read(self):
        if not self.script:
            if self.on_end is not None:
                self.on_end()
            return False, None
        item = self.script.pop(0)
        if item is None:
            return False, None
        if isinstance(item, Exception):
            raise item
        return True, item

    def release(self):
        self.released = True
        self.opened = False


def run_capture(monkeypatch, source, caps, **kw):
    """Drive the reader loop on this thread until the scripted captures run out."""
    src = CaptureSource("cam-1", source, reopen_seconds=0, **kw)
    events = []
    src.subscribe(lambda ev, info: events.append((ev, info)))
    pending = list(caps)

    def open_capture(*args):
        if pending:
            cap = pending.pop(0)
        else:
            src._stop.set()
            cap = FakeCapture(opened=False)
        cap.on_end = src._stop.set
        return cap

    monkeypatch.setattr(capture.cv2, "VideoCapture", open_capture)
    monkeypatch.setattr(capture, "time", SimpleNamespace(time=itertools.count().__next__, sleep=lambda s: None))
    src._run()
    return src, events


def kinds(events):
    return [ev for ev, _ in events]


def test_failed_reads_wait_then_stall_then_resume(monkeypatch):
    src, events = run_capture(
        monkeypatch, "rtsp://ward/cam1", [FakeCapture([FRAME, None, None, None, FRAME])], stall_reads=3
    )
    assert kinds(events) == ["canplay", "playing", "waiting", "stalled", "playing", "waiting"]
    assert (src.width, src.height) == (320, 240)


def test_url_open_failure_is_network_error_then_reopens(monkeypatch):
    src, events = run_capture(monkeypatch, "rtsp://ward/cam1", [FakeCapture(opened=False), FakeCapture([FRAME])])
    assert kinds(events) == ["error", "canplay", "playing", "waiting"]
    assert events[0][1]["code"] == "network"


def test_file_open_failure_is_unsupported(monkeypatch):
    src, events = run_capture(monkeypatch, "missing.mp4", [FakeCapture(opened=False)])
    assert events[0][0] == "error"
    assert events[0][1]["code"] == "unsupported"
    assert set(kinds(events)) == {"error"}
    assert src.cap is None


def test_decode_exception_is_decode_error(monkeypatch):
    first = FakeCapture([FRAME, cv2.error("corrupt packet")])
    src, events = run_capture(monkeypatch, "rtsp://ward/cam1", [first])
    assert kinds(events)[:3] == ["canplay", "playing", "error"]
    assert events[2][1]["code"] == "decode"
    assert first.released
    assert not src.is_playing()


def test_file_rewinds_at_end_of_stream(monkeypatch):
    cap = FakeCapture([FRAME, None, FRAME], props={cv2.CAP_PROP_POS_MSEC: 1500.0})
    src, events = run_capture(monkeypatch, "clip.mp4", [cap], loop=True)
    assert kinds(events) == ["canplay", "playing", "waiting"]
    assert (cv2.CAP_PROP_POS_FRAMES, 0) in cap.sets
    assert src._frames_read == 2
    assert src.position() == pytest.approx(1.5)


def test_too_many_failures_reopen_the_source(monkeypatch):
    first = FakeCapture([FRAME, None, None, None])
    second = FakeCapture([FRAME])
    src, events = run_capture(
        monkeypatch, "rtsp://ward/cam1", [first, second], stall_reads=2, max_failed_reads=3
    )
    assert kinds(events) == ["canplay", "playing", "waiting", "stalled", "canplay", "playing", "waiting"]
    assert first.released
    assert src.cap is second


def test_live_position_counts_frames(monkeypatch):
    src, _ = run_capture(monkeypatch, "rtsp://ward/cam1", [FakeCapture([FRAME, FRAME, FRAME])], fps_cap=10)
    assert src.position() == pytest.approx(0.3)


def test_read_frame_before_and_after_first_frame(monkeypatch):
    src = CaptureSource("cam-1", "rtsp://ward/cam1")
    assert src.read_frame() is None
    src, _ = run_capture(monkeypatch, "rtsp://ward/cam1", [FakeCapture([FRAME])])
    assert src.read_frame((96, 54)).shape == (54, 96, 3)
    assert src.read_frame().shape == (240, 320, 3)


def test_pixels_disabled_raise():
    src = CaptureSource("cam-1", "rtsp://ward/cam1", pixels=False)
    with pytest.raises(PixelAccessError):
        src.read_frame()


def test_close_is_silent_teardown():
    src = CaptureSource("cam-1", "rtsp://ward/cam1")
    events = []
    src.subscribe(lambda ev, info: events.append(ev))
    src.close()
    assert events == []
    assert not src.is_playing()
