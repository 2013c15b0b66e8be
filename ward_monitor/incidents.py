# ward_monitor/incidents.py
import logging
import threading
from typing import Callable, Dict, List, Optional

from .models import INCIDENT_SEVERITIES, INCIDENT_TYPES, Evidence, Incident, max_severity, now_ms, severity_rank

log = logging.getLogger(__name__)


def sort_for_inbox(incidents: List[Incident]) -> List[Incident]:
    """Unacknowledged first, then severity high to low, then newest first."""
    return sorted(
        incidents,
        key=lambda i: (i.acknowledged, -severity_rank(i.severity), -i.created_at),
    )


def global_severity(incidents: List[Incident]) -> str:
    sev = "none"
    for i in incidents:
        sev = max_severity(sev, i.severity)
    return sev


def count_by_severity(incidents: List[Incident]) -> Dict[str, int]:
    counts = {"watch": 0, "risk": 0, "critical": 0}
    for i in incidents:
        if i.severity in counts:
            counts[i.severity] += 1
    return counts


class IncidentManager:
    """
    Active incident set, at most one per (source_id, type).

    Listeners get ``(action, incident)`` with action one of created,
    updated, acknowledged, resolved. Safe to call from request threads and
    the scheduler thread.
    """

    def __init__(self, clock_ms: Callable[[], int] = now_ms):
        self.clock_ms = clock_ms
        self._lock = threading.RLock()
        self._items: Dict[str, Incident] = {}
        self._listeners = []

    def subscribe(self, listener):
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self, action, incident):
        for fn in list(self._listeners):
            try:
                fn(action, incident)
            except Exception:
                log.exception("[incidents] listener failed on %s", action)

    def get(self, incident_id) -> Optional[Incident]:
        with self._lock:
            return self._items.get(incident_id)

    def find(self, source_id, type_) -> Optional[Incident]:
        with self._lock:
            for inc in self._items.values():
                if inc.source_id == source_id and inc.type == type_:
                    return inc
        return None

    def active(self) -> List[Incident]:
        with self._lock:
            return list(self._items.values())

    def inbox(self) -> List[Incident]:
        return sort_for_inbox(self.active())

    def upsert(
        self,
        source_id,
        type_,
        severity,
        confidence,
        reasons=None,
        event_offset=None,
        source_name=None,
    ) -> Incident:
        if type_ not in INCIDENT_TYPES:
            raise ValueError(f"unknown incident type {type_!r}")
        if severity not in INCIDENT_SEVERITIES:
            raise ValueError(f"unknown incident severity {severity!r}")
        reasons = list(reasons or [])
        with self._lock:
            existing = self.find(source_id, type_)
            if existing is not None:
                # the latest reading always describes the current evidence
                # window; peak_* keep the strongest explanation seen so far
                if severity_rank(severity) >= severity_rank(existing.severity):
                    existing.peak_confidence = confidence
                    existing.peak_reasons = list(reasons)
                existing.severity = max_severity(existing.severity, severity)
                existing.confidence = confidence
                existing.reasons = reasons
                existing.event_time_offset = event_offset
                existing.acknowledged = False
                existing.created_at = self.clock_ms()
                inc, action = existing, "updated"
            else:
                inc = Incident(
                    id=Incident.new_id(),
                    source_id=source_id,
                    source_name=source_name or source_id,
                    type=type_,
                    severity=severity,
                    confidence=confidence,
                    created_at=self.clock_ms(),
                    event_time_offset=event_offset,
                    reasons=reasons,
                    evidence=Evidence(),
                    peak_confidence=confidence,
                    peak_reasons=list(reasons),
                )
                self._items[inc.id] = inc
                action = "created"
        log.info("[incidents] %s %s %s/%s sev=%s conf=%.2f", action, inc.id, source_id, type_, inc.severity, confidence)
        self._notify(action, inc)
        return inc

    def acknowledge(self, incident_id) -> Optional[Incident]:
        with self._lock:
            inc = self._items.get(incident_id)
            if inc is None or inc.acknowledged:
                return inc
            inc.acknowledged = True
        self._notify("acknowledged", inc)
        return inc

    def resolve(self, incident_id) -> Optional[Incident]:
        with self._lock:
            inc = self._items.pop(incident_id, None)
        if inc is not None:
            log.info("[incidents] resolved %s", incident_id)
            self._notify("resolved", inc)
        return inc

    def attach_evidence(self, incident_id, **frames) -> Optional[Incident]:
        with self._lock:
            inc = self._items.get(incident_id)
            if inc is None:
                return None
            for k, v in frames.items():
                if v is not None and hasattr(inc.evidence, k):
                    setattr(inc.evidence, k, v)
        self._notify("updated", inc)
        return inc

    def by_source(self) -> Dict[str, Incident]:
        """Highest-severity active incident per source (inbox order breaks ties)."""
        out: Dict[str, Incident] = {}
        for inc in self.inbox():
            cur = out.get(inc.source_id)
            if cur is None or severity_rank(inc.severity) > severity_rank(cur.severity):
                out[inc.source_id] = inc
        return out

    def global_severity(self) -> str:
        return global_severity(self.active())


class AlertThrottle:
    """
    Coarse per-source limit on what reaches the incident inbox, separate from
    the detector's own cooldown. Keyed by (source, type, severity).
    """

    def __init__(self, windows=None, default_window=30.0):
        self.windows = {"watch": 60.0, "risk": 30.0, "critical": 12.0}
        self.windows.update(windows or {})
        self.default_window = float(default_window)
        self._last = {}

    def allow(self, source_id, type_, severity, ts) -> bool:
        key = (source_id, type_, severity)
        window = float(self.windows.get(severity, self.default_window))
        last = self._last.get(key)
        if last is not None and ts - last <= window:
            return False
        self._last[key] = ts
        return True

    def forget(self, source_id):
        for key in [k for k in self._last if k[0] == source_id]:
            del self._last[key]
