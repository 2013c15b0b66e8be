# ward_monitor/models.py
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

INCIDENT_TYPES = ("FALL", "INACTIVITY")
INCIDENT_SEVERITIES = ("watch", "risk", "critical")

_SEVERITY_RANK = {"none": 0, "watch": 1, "risk": 2, "critical": 3}


def severity_rank(sev: str) -> int:
    return _SEVERITY_RANK.get(sev, 0)


def max_severity(a: str, b: str) -> str:
    return b if severity_rank(b) > severity_rank(a) else a


def now_ms() -> int:
    return int(time.time() * 1000)


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def band_for_count(count: int) -> str:
    if count <= 0:
        return "none"
    if count <= 3:
        return "few"
    return "crowd"


@dataclass
class HealthStatus:
    state: str
    since: float
    reason: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self):
        return asdict(self)


@dataclass
class SceneReading:
    people_band: str = "unknown"
    motion: float = 0.0
    pixels_readable: bool = False

    def to_dict(self):
        return asdict(self)


@dataclass
class TrackState:
    last_center_y: Optional[float] = None
    last_aspect_ratio: Optional[float] = None
    last_sample_time: Optional[float] = None
    post_drop_still_since: Optional[float] = None
    cooldown_until: float = 0.0
    motion_ema: float = 0.02

    def reset(self):
        # the motion baseline survives an empty frame, it only decays
        self.last_center_y = None
        self.last_aspect_ratio = None
        self.last_sample_time = None
        self.post_drop_still_since = None
        self.motion_ema = max(0.006, self.motion_ema * 0.95)


@dataclass
class BehavioralReading:
    state: str = "none"
    confidence: float = 0.0
    reasons: List[str] = field(default_factory=list)
    ready: bool = True
    person_count: int = 0
    people_band: str = "unknown"
    motion: float = 0.0
    inactivity: str = "none"
    still_seconds: float = 0.0
    ts: float = 0.0

    def to_dict(self):
        return asdict(self)


@dataclass
class Evidence:
    before: Optional[str] = None
    peak: Optional[str] = None
    after: Optional[str] = None


@dataclass
class Incident:
    id: str
    source_id: str
    source_name: str
    type: str
    severity: str
    confidence: float
    created_at: int
    acknowledged: bool = False
    event_time_offset: Optional[float] = None
    reasons: List[str] = field(default_factory=list)
    evidence: Evidence = field(default_factory=Evidence)
    vitals: Optional[Dict[str, Any]] = None
    peak_confidence: float = 0.0
    peak_reasons: List[str] = field(default_factory=list)

    @staticmethod
    def new_id() -> str:
        return f"inc-{uuid.uuid4().hex[:12]}-{now_ms()}"

    def to_dict(self):
        return asdict(self)
