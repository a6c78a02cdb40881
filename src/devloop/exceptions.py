"""Devloop exceptions."""

from __future__ import annotations


class DevloopError(Exception):
    """Base class for devloop errors."""


class PortUnavailableError(DevloopError):
    """Raised when a requested port is already in use."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Port {port} is unavailable")


class NoFreePortError(DevloopError):
    """Raised when no free port was found within the probe ceiling."""

    def __init__(self, start: int, attempts: int):
        self.start = start
        self.attempts = attempts
        last = start + attempts - 1
        super().__init__(f"No free port found in range {start}-{last} ({attempts} attempts)")


class ServerNotListeningError(DevloopError):
    """Raised when a spawned server never accepted connections."""

    def __init__(self, port: int, timeout: float):
        self.port = port
        self.timeout = timeout
        super().__init__(f"Server is not listening on port {port}")


class BundlerConfigError(DevloopError):
    """Raised for missing, unknown or unsupported bundler configuration."""


class TemplateNotFoundError(DevloopError):
    """Raised when the HTML template cannot be read."""
