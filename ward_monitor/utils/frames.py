# ward_monitor/utils/frames.py
import base64

import cv2
import numpy as np

# Rec. 709 luma weights, applied to BGR frames
_LUMA_BGR = np.array([0.0722, 0.7152, 0.2126], dtype=np.float32)

PROBE_SIZE = (96, 54)


def luma(frame_bgr: np.ndarray) -> np.ndarray:
    """Per-pixel luma (0..255 float32) of a BGR or greyscale frame."""
    if frame_bgr.ndim == 2:
        return frame_bgr.astype(np.float32)
    return frame_bgr[..., :3].astype(np.float32) @ _LUMA_BGR


def inference_size(width: int, height: int, max_width: int = 360, min_height: int = 160):
    out_w = min(max_width, int(width))
    out_h = max(min_height, int(round(out_w * height / max(1, width))))
    return out_w, out_h


def to_data_url(frame_bgr: np.ndarray, quality: int = 80):
    if frame_bgr is None:
        return None
    ok, jpg = cv2.imencode(".jpg", frame_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return None
    return "data:image/jpeg;base64," + base64.b64encode(jpg.tobytes()).decode("ascii")
