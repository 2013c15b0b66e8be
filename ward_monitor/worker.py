# ward_monitor/worker.py
import logging
import threading

from .detectors.coordinator import InferenceCoordinator
from .features.fall import BehavioralDetector, infer_role
from .features.health import HealthMonitor
from .features.scene import SceneProbe
from .incidents import AlertThrottle, IncidentManager, count_by_severity
from .models import BehavioralReading, SceneReading
from .utils.bus import EventBus
from .utils.capture import CaptureSource
from .utils.frames import to_data_url
from .utils.ringbuffer import RingBuffer
from .utils.scheduler import Scheduler

log = logging.getLogger(__name__)


class CameraWorker:
    """
    Adapter for one source: wires the source into the health monitor, scene
    probe and behavioral detector, publishes their updates and turns
    behavioral readings into incidents.
    """

    def __init__(self, cam_cfg, cfg, scheduler, coordinator, incidents, bus, throttle, source=None):
        self.id = cam_cfg["id"]
        self.name = cam_cfg.get("name", self.id)
        self.role = cam_cfg.get("role") or infer_role(self.name, cam_cfg.get("source"))
        self.pixels = bool(cam_cfg.get("pixels", True))
        self.cfg = cfg
        self.scheduler = scheduler
        self.coordinator = coordinator
        self.incidents = incidents
        self.bus = bus
        self.throttle = throttle

        fps = cam_cfg.get("fps_cap", 15)
        self.rbuf = RingBuffer(seconds=(cfg.get("evidence") or {}).get("pre_seconds", 3), fps=fps)
        if source is None:
            source = CaptureSource(
                self.id,
                cam_cfg["source"],
                fps_cap=fps,
                loop=cam_cfg.get("loop", True),
                pixels=self.pixels,
                on_frame=self.rbuf.push,
            )
        self.source = source

        self.health = None
        self.scene = SceneReading()
        self.behavior = BehavioralReading(ready=False, reasons=["video_not_ready"])
        self._detector = None
        self._detach = []
        self._pending_after = set()

    # --- lifecycle ---
    def start(self):
        if hasattr(self.source, "start"):
            self.source.start()
        hcfg = dict(self.cfg.get("health") or {})
        monitor = HealthMonitor(
            self.source, self.on_health, self.scheduler, enable_pixel_probe=self.pixels, tag=self.id, **hcfg
        )
        self.health = monitor.status
        self._detach.append(monitor.attach())

        probe = SceneProbe(self.source, self.on_scene, self.scheduler, tag=self.id, **(self.cfg.get("scene") or {}))
        self._detach.append(probe.attach())

        self._detector = BehavioralDetector(
            self.source,
            self.on_reading,
            self.scheduler,
            self.coordinator,
            health_state=lambda: monitor.state,
            role=self.role,
            fall=self.cfg.get("fall"),
            inactivity=self.cfg.get("inactivity"),
            tag=self.id,
        )
        self._detach.append(self._detector.attach())
        log.info("[worker] started %s (%s, role=%s)", self.id, self.name, self.role)

    def stop(self):
        for detach in self._detach:
            detach()
        self._detach = []
        self.throttle.forget(self.id)
        if hasattr(self.source, "close"):
            self.source.close()

    # --- subsystem callbacks (scheduler thread) ---
    def on_health(self, status):
        self.health = status
        self.bus.post_event({
            "event_type": "health",
            "camera_id": self.id,
            "state": status.state,
            "reason": status.reason,
            "details": status.details,
        })

    def on_scene(self, reading):
        changed = (reading.people_band, reading.pixels_readable) != (self.scene.people_band, self.scene.pixels_readable)
        self.scene = reading
        if changed:
            self.bus.post_event({"event_type": "scene", "camera_id": self.id, **reading.to_dict()})

    def on_reading(self, reading):
        self.behavior = reading
        self.bus.post_event({
            "event_type": "behavior",
            "camera_id": self.id,
            "state": reading.state,
            "confidence": round(reading.confidence, 3),
            "reasons": reading.reasons,
            "ready": reading.ready,
        })
        if not reading.ready:
            return
        self._fill_after()

        now = self.scheduler.now()
        if reading.state in ("risk", "critical") and self.throttle.allow(self.id, "FALL", reading.state, now):
            reasons = reading.reasons or [f"ai_fall_{reading.state}"]
            self._raise("FALL", reading.state, reading.confidence, reasons)

        if reading.inactivity != "none" and self.throttle.allow(self.id, "INACTIVITY", reading.inactivity, now):
            risk_after = float((self.cfg.get("inactivity") or {}).get("risk_after_seconds", 240))
            conf = min(0.95, 0.55 + reading.still_seconds / max(1.0, risk_after) * 0.35)
            self._raise("INACTIVITY", reading.inactivity, conf, [f"still:{int(reading.still_seconds)}s"])

    def _raise(self, type_, severity, confidence, reasons):
        inc = self.incidents.upsert(
            self.id,
            type_,
            severity,
            confidence,
            reasons=reasons,
            event_offset=self.source.position(),
            source_name=self.name,
        )
        before = self.rbuf.oldest()
        self.incidents.attach_evidence(
            inc.id,
            before=to_data_url(before[1]) if before else None,
            peak=to_data_url(self._detector.last_frame if self._detector else None),
        )
        self._pending_after.add(inc.id)
        return inc

    def _fill_after(self):
        if not self._pending_after or self._detector is None or self._detector.last_frame is None:
            return
        after = to_data_url(self._detector.last_frame)
        for inc_id in list(self._pending_after):
            self.incidents.attach_evidence(inc_id, after=after)
        self._pending_after.clear()

    # --- views ---
    def people_band(self) -> str:
        # detector count beats the motion proxy once the detector is running
        if self.behavior.ready and self.behavior.people_band != "unknown":
            return self.behavior.people_band
        return self.scene.people_band

    def status(self) -> dict:
        return {
            "camera_id": self.id,
            "name": self.name,
            "role": self.role,
            "health": self.health.to_dict() if self.health else None,
            "scene": {**self.scene.to_dict(), "people_band": self.people_band()},
            "behavior": self.behavior.to_dict(),
        }


class Monitor:
    """Multi-camera orchestrator: one scheduler thread, one inference slot."""

    def __init__(self, cfg, detector=None, scheduler=None, executor=None, sources=None):
        self.cfg = cfg
        self.scheduler = scheduler or Scheduler()
        if detector is None:
            from .detectors.yolo import load_detector

            detector = load_detector(cfg["yolo"])
        self.coordinator = InferenceCoordinator(detector, executor=executor)
        self.incidents = IncidentManager()
        self.bus = EventBus(api_url=(cfg.get("bus") or {}).get("api_url"))
        self.throttle = AlertThrottle(windows=cfg.get("alerts"))
        self.incidents.subscribe(self._on_incident)
        self.workers = {}
        self._thread = None

        sources = sources or {}
        for cam in cfg.get("cameras", []):
            self.workers[cam["id"]] = CameraWorker(
                cam, cfg, self.scheduler, self.coordinator, self.incidents, self.bus, self.throttle,
                source=sources.get(cam["id"]),
            )
        if not self.workers:
            log.warning("[monitor] no cameras configured; add a 'cameras:' list in config.yaml")

    def _on_incident(self, action, incident):
        self.bus.post_event({"event_type": "incident", "action": action, "incident": incident.to_dict()})

    def start(self, run_loop=True):
        for w in self.workers.values():
            w.start()
        if run_loop:
            self._thread = threading.Thread(target=self.scheduler.run_forever, name="scheduler", daemon=True)
            self._thread.start()

    def stop(self):
        self.scheduler.stop()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        for w in self.workers.values():
            w.stop()
        self.coordinator.shutdown()
        self.bus.close()

    # --- user actions ---
    def acknowledge(self, incident_id):
        return self.incidents.acknowledge(incident_id)

    def resolve(self, incident_id):
        return self.incidents.resolve(incident_id)

    def summary(self) -> dict:
        active = self.incidents.active()
        health = {"buffering": 0, "frozen": 0, "black": 0, "error": 0}
        scene = {"empty": 0, "crowd": 0}
        for w in self.workers.values():
            if w.health and w.health.state in health:
                health[w.health.state] += 1
            band = w.people_band()
            if band == "none":
                scene["empty"] += 1
            elif band == "crowd":
                scene["crowd"] += 1
        return {
            "safety": self.incidents.global_severity(),
            "incidents": count_by_severity(active),
            "unacknowledged": sum(1 for i in active if not i.acknowledged),
            "health": health,
            "scene": scene,
        }
