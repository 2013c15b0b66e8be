class InactivityTimer:
    """Dwell timer for a tracked person who keeps still."""

    def __init__(self, watch_after_seconds=90.0, risk_after_seconds=240.0):
        self.watch_after = float(watch_after_seconds)
        self.risk_after = float(risk_after_seconds)
        self.still_since = None

    def reset(self):
        self.still_since = None

    def step(self, person_present, little_motion, ts):
        """Returns (severity, still_seconds); severity is none, watch or risk."""
        if not person_present or not little_motion:
            self.still_since = None
            return "none", 0.0
        if self.still_since is None:
            self.still_since = ts
        still_s = ts - self.still_since
        if still_s >= self.risk_after:
            return "risk", still_s
        if still_s >= self.watch_after:
            return "watch", still_s
        return "none", still_s
