# ward_monitor/features/health.py
import logging
import time

import numpy as np

from ..models import HealthStatus
from ..utils.frames import PROBE_SIZE, luma

log = logging.getLogger(__name__)

ERROR_CLASSES = ("aborted", "network", "decode", "unsupported")
BUFFERING_EVENTS = ("waiting", "stalled")
RESUME_EVENTS = ("playing", "canplay")


def error_class(code) -> str:
    code = str(code or "").lower()
    return code if code in ERROR_CLASSES else "unknown"


class HealthMonitor:
    """
    Feed health state machine for one source.

    Three signal paths feed it: transport events from the source, a
    playback-position watchdog (frozen) and an optional pixel sampler
    (black). A status is delivered only when (state, reason) changes.
    Pixel read failures switch the sampler off for good and never show up
    as an ``error`` state.
    ``since`` is wall-clock time; the watchdog measures on the scheduler clock.
    """

    def __init__(
        self,
        source,
        on_health,
        scheduler,
        frozen_seconds=8.0,
        enable_pixel_probe=False,
        sample_every=0.8,
        black_luma_threshold=18,
        black_ratio_threshold=0.92,
        black_consecutive=2,
        watchdog_every=0.4,
        tag=None,
        wall_clock=time.time,
    ):
        self.source = source
        self.on_health = on_health
        self.scheduler = scheduler
        self.frozen_seconds = float(frozen_seconds)
        self.enable_pixel_probe = bool(enable_pixel_probe)
        self.sample_every = float(sample_every)
        self.black_luma_threshold = float(black_luma_threshold)
        self.black_ratio_threshold = float(black_ratio_threshold)
        self.black_consecutive = int(black_consecutive)
        self.watchdog_every = float(watchdog_every)
        self.tag = tag or getattr(source, "source_id", "source")
        self.wall_clock = wall_clock

        self.status = HealthStatus(state="ok", since=wall_clock(), reason="init")
        self.pixel_probe_disabled = False
        self._black_streak = 0
        self._last_position = None
        self._last_progress_at = scheduler.now()
        self._timers = []
        self._pixel_timer = None
        self._unsubscribe = None
        self._disposed = False

    @property
    def state(self) -> str:
        return self.status.state

    def attach(self):
        self._last_position = self.source.position()
        self._last_progress_at = self.scheduler.now()
        self._unsubscribe = self.source.subscribe(self._on_transport_threadsafe)
        self._timers.append(
            self.scheduler.call_every(self.watchdog_every, self.check_progress, name=f"health-watchdog:{self.tag}")
        )
        if self.enable_pixel_probe:
            self._pixel_timer = self.scheduler.call_every(
                self.sample_every, self.sample_pixels, name=f"health-pixels:{self.tag}"
            )
            self._timers.append(self._pixel_timer)
        self._emit("ok", "attached")
        return self.detach

    def detach(self):
        if self._disposed:
            return
        self._disposed = True
        for t in self._timers:
            t.cancel()
        self._timers = []
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    # --- emission ---
    def _snapshot(self):
        return {
            "position": self.source.position(),
            "playing": self.source.is_playing(),
            "width": self.source.width,
            "height": self.source.height,
        }

    def _emit(self, state, reason, **extra):
        if self._disposed:
            return
        if state == self.status.state and reason == self.status.reason:
            return
        details = self._snapshot()
        details.update(extra)
        prev = self.status.state
        self.status = HealthStatus(state=state, since=self.wall_clock(), reason=reason, details=details)
        level = logging.WARNING if state == "error" else logging.DEBUG
        log.log(level, "[health:%s] %s -> %s (%s)", self.tag, prev, state, reason)
        self.on_health(self.status)

    # --- transport events ---
    def _on_transport_threadsafe(self, event, info=None):
        # sources raise events from their reader thread
        self.scheduler.call_soon(self.handle_transport, event, info or {})

    def handle_transport(self, event, info=None):
        if self._disposed:
            return
        info = info or {}
        if event in BUFFERING_EVENTS:
            self._emit("buffering", event)
        elif event in RESUME_EVENTS:
            self._black_streak = 0
            self._emit("ok", event)
        elif event == "error":
            cls = error_class(info.get("code"))
            self._emit("error", f"media_{cls}", error_code=cls, message=info.get("message"))

    # --- frozen watchdog ---
    def check_progress(self):
        if self._disposed or not self.source.is_playing():
            return
        pos = self.source.position()
        if pos is None:
            return
        now = self.scheduler.now()
        if pos != self._last_position:
            self._last_position = pos
            self._last_progress_at = now
            if self.status.state == "frozen":
                self._emit("ok", "time_progress")
            return
        if self.status.state in ("buffering", "error"):
            return
        if now - self._last_progress_at >= self.frozen_seconds:
            self._emit("frozen", f"no_time_progress_{self.frozen_seconds:g}s")

    # --- black sampler ---
    def sample_pixels(self):
        if self._disposed or self.pixel_probe_disabled:
            return
        # black is only inferred on top of an otherwise healthy feed
        if self.status.state not in ("ok", "black"):
            return
        try:
            frame = self.source.read_frame(PROBE_SIZE)
        except Exception as e:
            self.pixel_probe_disabled = True
            if self._pixel_timer:
                self._pixel_timer.cancel()
            log.info("[health:%s] pixel probe disabled: %s", self.tag, e)
            return
        if frame is None:
            return
        ratio = self.dark_ratio(frame)
        if ratio >= self.black_ratio_threshold:
            self._black_streak += 1
        else:
            self._black_streak = 0
            if self.status.state == "black":
                self._emit("ok", "black_recovered", ratio=round(ratio, 3))
        if self._black_streak >= self.black_consecutive and self.status.state != "black":
            self._emit("black", f"black_ratio_{ratio:.2f}", ratio=round(ratio, 3))

    def dark_ratio(self, frame) -> float:
        return float(np.mean(luma(frame) <= self.black_luma_threshold))


def attach(source, on_health, scheduler, **options):
    """Start monitoring ``source``; returns the detach callable."""
    return HealthMonitor(source, on_health, scheduler, **options).attach()
