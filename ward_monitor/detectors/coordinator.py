# ward_monitor/detectors/coordinator.py
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

log = logging.getLogger(__name__)


class InferenceCoordinator:
    """
    Owns the one inference slot shared by every source.

    ``try_detect`` never blocks: when another source holds the slot it
    returns False and the caller tries again on its next tick. There is no
    queue and no fairness beyond each caller's retry rate.
    """

    def __init__(self, detector, executor=None):
        self.detector = detector
        self._slot = threading.Lock()
        self._own_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        self.calls = 0
        self.contended = 0

    @property
    def busy(self) -> bool:
        return self._slot.locked()

    def try_detect(self, frame, on_done) -> bool:
        """
        Run ``detector.detect(frame)`` if the slot is free.

        ``on_done(future)`` is called from the inference thread once the
        slot has been released again.
        """
        if not self._slot.acquire(blocking=False):
            self.contended += 1
            return False
        self.calls += 1
        try:
            fut = self._executor.submit(self.detector.detect, frame)
        except Exception:
            self._slot.release()
            raise

        def _release(f):
            self._slot.release()
            on_done(f)

        fut.add_done_callback(_release)
        return True

    def shutdown(self):
        if self._own_executor:
            self._executor.shutdown(wait=False)
