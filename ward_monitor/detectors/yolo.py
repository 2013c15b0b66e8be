# ward_monitor/detectors/yolo.py
import logging

log = logging.getLogger(__name__)


class YoloDetector:
    """
    Person-detector capability over an ultralytics YOLO model.

    Constructing it loads the weights once; the instance is the model handle
    shared by every source through the InferenceCoordinator.
    """

    def __init__(self, weights: str, conf: float = 0.25, iou: float = 0.45, classes=None, imgsz: int = 416):
        from ultralytics import YOLO

        self.model = YOLO(weights)
        self.conf = conf
        self.iou = iou
        self.imgsz = imgsz
        self._class_filter = None
        # map class names -> indices (case-insensitive)
        names = self.model.names if isinstance(self.model.names, dict) else {i: n for i, n in enumerate(self.model.names)}
        if classes:
            name_to_idx = {v.lower(): k for k, v in names.items()}
            self._class_filter = [name_to_idx[c.lower()] for c in classes if c.lower() in name_to_idx]
        log.info("[yolo] loaded %s (classes=%s)", weights, classes or "all")

    def detect(self, frame_bgr):
        """Returns [{"class_name", "score", "x", "y", "width", "height"}] in frame pixels."""
        # BGR -> RGB for ultralytics
        results = self.model.predict(
            source=frame_bgr[..., ::-1],
            conf=self.conf,
            iou=self.iou,
            classes=self._class_filter,
            imgsz=self.imgsz,
            verbose=False
        )
        dets = []
        if not results:
            return dets
        r0 = results[0]
        if r0.boxes is None:
            return dets
        boxes = r0.boxes.xyxy.cpu().numpy()
        confs = r0.boxes.conf.cpu().numpy()
        clss = r0.boxes.cls.cpu().numpy().astype(int)
        names = r0.names if isinstance(r0.names, dict) else {i: n for i, n in enumerate(r0.names)}
        for (x1, y1, x2, y2), cf, ci in zip(boxes, confs, clss):
            dets.append({
                "class_name": names[int(ci)],
                "score": float(cf),
                "x": float(x1),
                "y": float(y1),
                "width": float(x2 - x1),
                "height": float(y2 - y1),
            })
        return dets


def load_detector(yolo_cfg: dict) -> YoloDetector:
    return YoloDetector(
        weights=yolo_cfg["weights"],
        conf=yolo_cfg.get("conf", 0.25),
        iou=yolo_cfg.get("iou", 0.45),
        classes=yolo_cfg.get("classes", ["person"]),
        imgsz=yolo_cfg.get("imgsz", 416),
    )
