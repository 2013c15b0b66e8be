from collections import deque
from typing import Deque, Optional, Tuple
import numpy as np

# Pre-roll of (ts_float, frame_bgr); appended from the capture thread
class RingBuffer:
    def __init__(self, seconds: float, fps: float):
        self.capacity = max(1, int(seconds * fps))
        self.buf: Deque[Tuple[float, np.ndarray]] = deque(maxlen=self.capacity)

    def push(self, ts, frame):
        self.buf.append((ts, frame))

    def oldest(self) -> Optional[Tuple[float, np.ndarray]]:
        try:
            return self.buf[0]
        except IndexError:
            return None
