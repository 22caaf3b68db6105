from __future__ import annotations


class MonitorError(Exception):
    """Base class for monitor errors."""


class ConfigurationError(MonitorError):
    """Config is missing or invalid. The only fatal error class."""


class ProbeError(MonitorError):
    KINDS = ("timeout", "network", "http_status", "malformed_body", "missing_field")

    def __init__(self, kind: str, endpoint: str, detail: str = "") -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown probe error kind: {kind!r}")
        self.kind = kind
        self.endpoint = endpoint
        self.detail = detail
        super().__init__(f"{kind} from {endpoint}" + (f": {detail}" if detail else ""))


class RestartError(MonitorError):
    """A node control script could not be run or exited non-zero."""


class TransportError(MonitorError):
    """Telegram request failed or returned ok=false."""
