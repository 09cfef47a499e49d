"""Error taxonomy for the supervisor and share broker.

Process-level failures (tunnel unavailable, tunnel crash) are reported as
events on the EventBus, not raised.  Only synchronous failures that the
immediate caller must handle live here.
"""
from __future__ import annotations


class ShareDropError(Exception):
    """Base class for all sharedrop errors."""


class SpawnError(ShareDropError):
    """Executable missing, not runnable, or the OS refused to start it."""

    def __init__(self, role: str, executable: str, reason: str) -> None:
        super().__init__(f"Failed to start {role} ({executable}): {reason}")
        self.role = role
        self.executable = executable
        self.reason = reason


class ReadinessTimeout(ShareDropError):
    """Backend never answered within the configured readiness timeout.

    Only raised when ``Config.readiness_timeout`` is set; polling is
    unbounded otherwise.
    """

    def __init__(self, url: str, timeout: float) -> None:
        super().__init__(f"{url} not ready after {timeout:.1f}s")
        self.url = url
        self.timeout = timeout


class NotReadyError(ShareDropError):
    """The backend is not ready yet.  Retryable: wait and resubmit."""


class UpstreamError(ShareDropError):
    """The backend rejected the request or could not be reached."""

    def __init__(self, status: int | None, body: str) -> None:
        label = f"HTTP {status}" if status is not None else "transport error"
        super().__init__(f"Backend share request failed ({label}): {body}")
        self.status = status
        self.body = body
