"""Exception types raised across the gateway.

Only dispatch failures ever reach the client, and always normalized to
``{"error": message}`` or the rejection's own payload. Telemetry failures
never surface as exceptions at all.
"""

from typing import Any


class GatewayError(Exception):
    """Base class for gateway errors."""


class DispatchRejection(GatewayError):
    """The underlying handler answered with ``status(code).send(payload)``."""

    def __init__(self, code: int, payload: Any):
        super().__init__(f"Dispatch rejected with status {code}")
        self.code = code
        self.payload = payload


class DispatchAlreadySettled(GatewayError):
    """A handler tried to settle a dispatch that was already settled."""


class ServiceAlreadyRunning(GatewayError):
    """Another gateway process holds a live PID record."""

    def __init__(self, pid: int | None):
        super().__init__(f"Service is already running (PID {pid})")
        self.pid = pid


class ConfigError(GatewayError):
    """The configuration file or an override could not be used."""
