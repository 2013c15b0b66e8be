class WardMonitorError(RuntimeError):
    pass


class PixelAccessError(WardMonitorError):
    """Frame pixels cannot be read for this source (opaque or tainted feed)."""


class SourceOpenError(WardMonitorError):
    pass


class ConfigError(WardMonitorError):
    pass
