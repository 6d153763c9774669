"""Error kinds raised across the supervisor, CLI bridge and sync engine."""

from __future__ import annotations

from typing import Optional


class GatewayError(RuntimeError):
    """Base class for gateway failures that carry diagnostic text."""

    def __init__(self, message: str, *, details: Optional[str] = None):
        super().__init__(message)
        self.details = details


class NotConfiguredError(GatewayError):
    """A required credential or setting is missing (not retriable)."""


class GatewayUnavailableError(GatewayError):
    """The backend process is absent or not responding (retriable by restart)."""

    def __init__(self, message: str, *, kind: str = "startup_failed", details: Optional[str] = None):
        super().__init__(message, details=details)
        self.kind = kind


class PortTimeoutError(GatewayUnavailableError):
    def __init__(self, port: int, timeout_s: float):
        super().__init__(
            f"Port {port} did not accept connections within {timeout_s:g}s",
            kind="not_responding",
        )
        self.port = port
        self.timeout_s = timeout_s


class CliParseError(GatewayError):
    """CLI output did not match the expected shape."""

    def __init__(self, message: str, *, raw: str = "", stderr: str = ""):
        super().__init__(message, details=stderr or None)
        self.raw = raw
        self.stderr = stderr


class SyncAbortedError(GatewayError):
    """The integrity guard refused to mirror the local source."""


class SandboxTransportError(GatewayError):
    """Starting a process or mounting storage inside the sandbox failed."""
