# ward_monitor/utils/bus.py
import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone

import requests

log = logging.getLogger(__name__)


def _to_iso(ts):
    if ts is None:
        ts = time.time()
    if isinstance(ts, (int, float)):
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    # assume already a string
    return ts


class EventBus:
    """
    Fans out health / scene / behavior / incident events to in-process
    subscribers and, when ``api_url`` is set, POSTs them to
    ``<api_url>/events`` from a background sender thread.
    """

    def __init__(self, api_url=None, timeout=2.5, max_pending=256):
        self.api_url = api_url.rstrip("/") if api_url else None
        self.timeout = float(timeout)
        self._subscribers = []
        self._q = queue.Queue(maxsize=max_pending)
        self._sender = None
        self.dropped = 0

    def subscribe(self, fn):
        self._subscribers.append(fn)

        def _unsubscribe():
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def post_event(self, ev: dict):
        # normalize timestamp
        ev["ts_utc"] = _to_iso(ev.get("ts_utc"))
        for fn in list(self._subscribers):
            try:
                fn(ev)
            except Exception:
                log.exception("[bus] subscriber failed for %s", ev.get("event_type"))
        if self.api_url:
            self._enqueue(ev)

    def _enqueue(self, ev):
        if self._sender is None:
            self._sender = threading.Thread(target=self._run, name="event-bus", daemon=True)
            self._sender.start()
        try:
            self._q.put_nowait(ev)
        except queue.Full:
            self.dropped += 1
            log.warning("[bus] sender backlog full, dropped %s", ev.get("event_type"))

    def _run(self):
        while True:
            ev = self._q.get()
            if ev is None:
                return
            self._send(ev)

    def _send(self, ev):
        url = f"{self.api_url}/events"
        try:
            r = requests.post(url, json=ev, timeout=self.timeout)
            if r.status_code >= 300:
                log.warning("[bus] API error %s -> %s: %s", r.status_code, url, r.text[:500])
        except requests.RequestException as e:
            log.warning("[bus] POST failed (%s); event: %s", e, json.dumps(ev, default=str)[:800])

    def close(self):
        if self._sender is not None:
            try:
                self._q.put(None, timeout=1.0)
            except queue.Full:
                log.warning("[bus] sender still busy at close, %d events pending", self._q.qsize())
