# ward_monitor/utils/capture.py
import logging
import os
import threading
import time

import cv2

from ..errors import PixelAccessError, SourceOpenError

log = logging.getLogger(__name__)


def _is_url(source) -> bool:
    return isinstance(source, str) and "://" in source


class CaptureSource:
    """
    Frame source over ``cv2.VideoCapture``.

    A reader thread keeps the latest decoded frame and reports transport
    events (canplay, playing, waiting, stalled, error) to subscribers. The
    events arrive on the reader thread; consumers hand them to their own
    loop.
    """

    def __init__(
        self,
        source_id: str,
        source,
        fps_cap=15,
        loop=True,
        pixels=True,
        stall_reads=10,
        max_failed_reads=50,
        reopen_seconds=5.0,
        on_frame=None,
    ):
        self.source_id = source_id
        self.source = int(source) if isinstance(source, str) and source.isdigit() else source
        self.fps_cap = max(1, int(fps_cap))
        self.loop = bool(loop)
        self.pixels = bool(pixels)
        self.stall_reads = int(stall_reads)
        self.max_failed_reads = int(max_failed_reads)
        self.reopen_seconds = float(reopen_seconds)
        self.on_frame = on_frame

        self.width = 0
        self.height = 0
        self.cap = None
        self._frame = None
        self._position = None
        self._frames_read = 0
        self._playing = False
        self._listeners = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = None

    # --- FrameSource protocol ---
    def subscribe(self, listener):
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def position(self):
        return self._position

    def is_playing(self) -> bool:
        return self._playing and not self._stop.is_set()

    def read_frame(self, size=None):
        if not self.pixels:
            raise PixelAccessError(f"pixel access disabled for {self.source_id}")
        with self._lock:
            frame = self._frame
        if frame is None:
            return None
        if size is not None:
            return cv2.resize(frame, tuple(size), interpolation=cv2.INTER_AREA)
        return frame.copy()

    # --- lifecycle ---
    def _emit(self, event, **info):
        for fn in list(self._listeners):
            try:
                fn(event, info)
            except Exception:
                log.exception("[capture:%s] listener failed on %s", self.source_id, event)

    def open(self):
        if isinstance(self.source, int) and os.name == "nt":
            cap = cv2.VideoCapture(self.source, cv2.CAP_DSHOW)
        else:
            cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            cap.release()
            raise SourceOpenError(f"[{self.source_id}] Could not open camera/video source: {self.source}")
        self.cap = cap
        self.width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)) or self.width
        self.height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)) or self.height
        self._emit("canplay")

    def start(self):
        self._thread = threading.Thread(target=self._run, name=f"capture-{self.source_id}", daemon=True)
        self._thread.start()

    def close(self):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)
        self._release()

    def _release(self):
        try:
            if self.cap is not None and self.cap.isOpened():
                self.cap.release()
        except cv2.error as e:
            log.debug("[capture:%s] release failed: %s", self.source_id, e)
        self.cap = None

    def _try_open(self) -> bool:
        try:
            self.open()
            return True
        except SourceOpenError as e:
            log.warning("%s", e)
            self._emit("error", code="network" if _is_url(self.source) else "unsupported", message=str(e))
            return False

    def _run(self):
        period = 1.0 / self.fps_cap
        last = 0.0
        failed = 0

        if not self._try_open():
            self._reopen_loop()
            if self.cap is None:
                return

        while not self._stop.is_set():
            try:
                ok, frame = self.cap.read()
            except cv2.error as e:
                self._playing = False
                self._emit("error", code="decode", message=str(e))
                self._release()
                self._reopen_loop()
                if self.cap is None:
                    return
                continue

            if not ok and self.loop and not _is_url(self.source) and not isinstance(self.source, int):
                # end of file: rewind once before treating it as a failure
                self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                ok, frame = self.cap.read()

            if not ok or frame is None:
                failed += 1
                if failed == 1:
                    self._playing = False
                    self._emit("waiting")
                elif failed == self.stall_reads:
                    self._emit("stalled")
                elif failed >= self.max_failed_reads:
                    self._release()
                    self._reopen_loop()
                    if self.cap is None:
                        return
                    failed = 0
                time.sleep(0.05)
                continue

            now = time.time()
            if now - last < period:
                time.sleep(max(0, period - (now - last)))
                now = time.time()
            last = now

            with self._lock:
                self._frame = frame
            self.height, self.width = frame.shape[:2]
            self._frames_read += 1
            self._position = self._read_position()

            if failed or not self._playing:
                failed = 0
                self._playing = True
                self._emit("playing")

            if self.on_frame is not None:
                self.on_frame(now, frame)

    def _read_position(self):
        pos_ms = self.cap.get(cv2.CAP_PROP_POS_MSEC) if self.cap is not None else 0.0
        if pos_ms and pos_ms > 0:
            return pos_ms / 1000.0
        # live sources report no timeline; frames read stand in for progress
        return self._frames_read / float(self.fps_cap)

    def _reopen_loop(self):
        while not self._stop.is_set():
            if self._stop.wait(self.reopen_seconds):
                return
            if self._try_open():
                return
