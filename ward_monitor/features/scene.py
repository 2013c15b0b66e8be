# ward_monitor/features/scene.py
import logging

import numpy as np

from ..models import SceneReading
from ..utils.frames import PROBE_SIZE, luma

log = logging.getLogger(__name__)


class SceneProbe:
    """
    Model-free motion / occupancy estimate by frame differencing.

    Not a person detector: it counts changed pixels and active grid cells
    between two greyscale samples and maps them to a coarse people band.
    Stops for good after the first pixel read failure.
    """

    def __init__(
        self,
        source,
        on_change,
        scheduler,
        sample_every=0.9,
        motion_threshold=28,
        grid_x=6,
        grid_y=4,
        presence_min=0.004,
        crowd_min_cells=7,
        tag=None,
    ):
        self.source = source
        self.on_change = on_change
        self.scheduler = scheduler
        self.sample_every = float(sample_every)
        self.motion_threshold = float(motion_threshold)
        self.grid_x = int(grid_x)
        self.grid_y = int(grid_y)
        self.presence_min = float(presence_min)
        self.crowd_min_cells = int(crowd_min_cells)
        self.tag = tag or getattr(source, "source_id", "source")

        self.pixels_readable = True
        self._last = None
        self._timer = None
        self._disposed = False

    def attach(self):
        self._timer = self.scheduler.call_every(self.sample_every, self.sample, name=f"scene:{self.tag}")
        return self.detach

    def detach(self):
        self._disposed = True
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def sample(self):
        if self._disposed:
            return
        try:
            frame = self.source.read_frame(PROBE_SIZE)
        except Exception as e:
            self.pixels_readable = False
            self.detach()
            log.info("[scene:%s] pixels unreadable, probe stopped: %s", self.tag, e)
            self.on_change(SceneReading(people_band="unknown", motion=0.0, pixels_readable=False))
            return
        if frame is None:
            return

        gray = luma(frame)
        if self._last is None or self._last.shape != gray.shape:
            self._last = gray
            self.on_change(SceneReading(people_band="unknown", motion=0.0, pixels_readable=True))
            return

        reading = self.compare(self._last, gray)
        self._last = gray
        self.on_change(reading)

    def compare(self, prev: np.ndarray, gray: np.ndarray) -> SceneReading:
        h, w = gray.shape
        diff = np.abs(gray - prev)
        changed = diff > self.motion_threshold
        total = float(w * h)

        motion = float(np.clip(diff[changed].sum() / (total * 255.0), 0.0, 1.0))
        presence = float(changed.sum()) / total

        cell_w = w // self.grid_x
        cell_h = h // self.grid_y
        cells = self.cell_counts(changed, cell_w, cell_h)
        cell_floor = max(5, int(cell_w * cell_h * 0.02))
        active = int((cells > cell_floor).sum())

        if presence < self.presence_min:
            band = "none"
        elif active >= self.crowd_min_cells:
            band = "crowd"
        else:
            band = "few"
        return SceneReading(people_band=band, motion=motion, pixels_readable=True)

    def cell_counts(self, changed: np.ndarray, cell_w: int, cell_h: int) -> np.ndarray:
        h, w = changed.shape
        ys, xs = np.nonzero(changed)
        # last row / column absorbs the remainder
        cx = np.minimum(self.grid_x - 1, xs // max(1, cell_w))
        cy = np.minimum(self.grid_y - 1, ys // max(1, cell_h))
        counts = np.zeros(self.grid_x * self.grid_y, dtype=np.int64)
        np.add.at(counts, cy * self.grid_x + cx, 1)
        return counts


def attach(source, on_change, scheduler, **options):
    return SceneProbe(source, on_change, scheduler, **options).attach()
