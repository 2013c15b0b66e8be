# ward_monitor/features/fall.py
import logging
import re
import time
from collections import namedtuple

from ..models import BehavioralReading, TrackState, band_for_count, clamp01
from ..utils.frames import inference_size
from .inactivity import InactivityTimer

log = logging.getLogger(__name__)

# role -> (poll seconds, min person score)
ROLE_POLICY = {
    "patient": (0.55, 0.38),
    "operator": (0.85, 0.38),
    "ambient": (1.8, 0.45),
}
_PATIENT_HINT = re.compile(r"patient|bed|fall|ward|room", re.IGNORECASE)

FallStep = namedtuple("FallStep", "state confidence reasons motion little_motion")


def infer_role(name, source) -> str:
    if isinstance(source, int) or (isinstance(source, str) and source.isdigit()):
        return "operator"
    if _PATIENT_HINT.search(f"{source or ''} {name or ''}"):
        return "patient"
    return "ambient"


def select_people(detections, min_score):
    """Person boxes above ``min_score``, largest area first."""
    people = [
        d for d in detections
        if d.get("class_name", d.get("class")) == "person" and float(d.get("score", 0.0)) >= min_score
    ]
    people.sort(key=lambda d: d["width"] * d["height"], reverse=True)
    return people


class FallTracker:
    """
    Drop / posture-flip / stillness heuristic over the largest person box.

    A sudden downward move of the box centre, or a standing-to-lying aspect
    flip, reports ``risk`` and arms a stillness timer. Little motion for
    longer than ``still_confirm`` while armed reports ``critical`` and
    starts a cooldown.
    """

    def __init__(
        self,
        drop_threshold=0.12,
        drop_window=1.4,
        stand_aspect=1.05,
        lying_aspect=0.95,
        still_confirm=0.9,
        still_expiry=4.5,
        cooldown=12.0,
    ):
        self.drop_threshold = float(drop_threshold)
        self.drop_window = float(drop_window)
        self.stand_aspect = float(stand_aspect)
        self.lying_aspect = float(lying_aspect)
        self.still_confirm = float(still_confirm)
        self.still_expiry = float(still_expiry)
        self.cooldown = float(cooldown)
        self.track = TrackState()

    def reset(self):
        self.track = TrackState()

    def in_cooldown(self, ts) -> bool:
        return ts < self.track.cooldown_until

    def step(self, people, frame_height, ts) -> FallStep:
        tr = self.track
        if not people:
            tr.reset()
            return FallStep("none", 0.0, [], 0.0, False)

        p = people[0]
        center_y = p["y"] + p["height"] / 2.0
        aspect = p["height"] / max(1.0, p["width"])

        state, conf, reasons = "none", 0.0, []
        motion, little = 0.0, False

        if tr.last_center_y is not None and tr.last_sample_time is not None:
            dt = ts - tr.last_sample_time
            dy_norm = (center_y - tr.last_center_y) / max(1.0, float(frame_height))

            motion = min(1.0, abs(dy_norm) * 3.0)
            tr.motion_ema = max(0.004, min(0.25, tr.motion_ema * 0.92 + motion * 0.08))

            drop = dy_norm > self.drop_threshold and dt < self.drop_window
            flip = (
                tr.last_aspect_ratio is not None
                and tr.last_aspect_ratio > self.stand_aspect
                and aspect < self.lying_aspect
            )
            little = abs(dy_norm) < min(0.012, tr.motion_ema * 0.9)

            if drop:
                reasons.append(f"drop:{dy_norm:.2f}")
            if flip:
                reasons.append("posture_flip")

            if drop or flip:
                state = "risk"
                conf = clamp01(0.62 + dy_norm * 1.8 + (0.18 if flip else 0.0))
                tr.post_drop_still_since = ts
            elif tr.post_drop_still_since is not None:
                still_age = ts - tr.post_drop_still_since
                if little and still_age > self.still_confirm:
                    state = "critical"
                    conf = clamp01(0.78 + (still_age / 3.2) * 0.18 + (0.08 if aspect < 0.9 else 0.0))
                    reasons.append(f"still:{round(still_age)}s")
                    tr.cooldown_until = ts + self.cooldown
                    tr.post_drop_still_since = None
                elif still_age > self.still_expiry:
                    tr.post_drop_still_since = None

        tr.last_center_y = center_y
        tr.last_aspect_ratio = aspect
        tr.last_sample_time = ts
        return FallStep(state, conf, reasons, motion, little)


class BehavioralDetector:
    """
    Per-source fall / stillness detector.

    Every ``poll_every`` seconds it grabs a downscaled frame and asks the
    shared InferenceCoordinator for person boxes. Frames are skipped while
    the source's health is not ``ok``. A reading is delivered for every
    processed tick, ``none`` included, so callers can tell a quiet scene
    from a detector that is not running.
    """

    def __init__(
        self,
        source,
        on_reading,
        scheduler,
        coordinator,
        health_state=lambda: "ok",
        role="ambient",
        poll_every=None,
        min_score=None,
        max_width=360,
        min_height=160,
        fall=None,
        inactivity=None,
        tag=None,
        wall_clock=time.time,
    ):
        default_poll, default_score = ROLE_POLICY.get(role, ROLE_POLICY["ambient"])
        self.source = source
        self.on_reading = on_reading
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.health_state = health_state
        self.role = role
        self.poll_every = float(poll_every or default_poll)
        self.min_score = float(min_score if min_score is not None else default_score)
        self.max_width = int(max_width)
        self.min_height = int(min_height)
        self.tracker = FallTracker(**(fall or {}))
        self.inactivity = InactivityTimer(**(inactivity or {}))
        self.wall_clock = wall_clock
        self.tag = tag or getattr(source, "source_id", "source")

        self.last_reading = BehavioralReading(ready=False, reasons=["video_not_ready"])
        self.last_frame = None
        self._in_flight = False
        self._timer = None
        self._disposed = False

    @property
    def ready(self) -> bool:
        return self.last_reading.ready

    def attach(self):
        self._timer = self.scheduler.call_every(self.poll_every, self.tick, name=f"behavior:{self.tag}")
        return self.detach

    def detach(self):
        self._disposed = True
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def _deliver(self, reading):
        if self._disposed:
            return
        self.last_reading = reading
        self.on_reading(reading)

    def tick(self):
        if self._disposed or self._in_flight:
            return
        now = self.scheduler.now()
        w, h = self.source.width, self.source.height
        if not w or not h:
            self._deliver(BehavioralReading(ready=False, reasons=["video_not_ready"], ts=self.wall_clock()))
            return

        size = inference_size(w, h, self.max_width, self.min_height)
        try:
            frame = self.source.read_frame(size)
        except Exception as e:
            log.info("[behavior:%s] pixels unreadable, detector stopped: %s", self.tag, e)
            self._deliver(BehavioralReading(ready=False, reasons=["pixels_unreadable"], ts=self.wall_clock()))
            self.detach()
            return
        if frame is None:
            self._deliver(BehavioralReading(ready=False, reasons=["video_not_ready"], ts=self.wall_clock()))
            return

        if self.health_state() != "ok":
            # nothing seen across the gap may be compared with what comes after it
            self.tracker.reset()
            self.inactivity.reset()
            self._deliver(BehavioralReading(reasons=["stream_not_ok"], ts=self.wall_clock()))
            return
        if self.tracker.in_cooldown(now):
            self._deliver(BehavioralReading(reasons=["cooldown"], ts=self.wall_clock()))
            return

        frame_h = frame.shape[0]
        submitted = self.coordinator.try_detect(
            frame,
            lambda fut: self.scheduler.call_soon(self._on_detections, fut, frame, frame_h, now),
        )
        if submitted:
            self._in_flight = True

    def _on_detections(self, fut, frame, frame_h, ts):
        self._in_flight = False
        if self._disposed:
            return
        try:
            detections = fut.result()
        except Exception as e:
            log.warning("[behavior:%s] detector failed: %s", self.tag, e)
            self._deliver(BehavioralReading(reasons=["ai_error", str(e)], ts=self.wall_clock()))
            return
        self.last_frame = frame
        self._deliver(self.process(detections, frame_h, ts))

    def process(self, detections, frame_h, ts) -> BehavioralReading:
        people = select_people(detections, self.min_score)
        step = self.tracker.step(people, frame_h, ts)
        inactivity, still_s = self.inactivity.step(bool(people), step.little_motion, ts)
        if step.state != "none":
            log.info("[behavior:%s] fall %s conf=%.2f %s", self.tag, step.state, step.confidence, step.reasons)
        return BehavioralReading(
            state=step.state,
            confidence=step.confidence,
            reasons=step.reasons,
            ready=True,
            person_count=len(people),
            people_band=band_for_count(len(people)),
            motion=step.motion,
            inactivity=inactivity,
            still_seconds=round(still_s, 1),
            ts=self.wall_clock(),
        )


def attach(source, on_reading, scheduler, coordinator, **options):
    return BehavioralDetector(source, on_reading, scheduler, coordinator, **options).attach()
