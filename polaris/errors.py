"""
Exception types shared by the sync engine, the store and the HTTP layer.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PolarisError(Exception):
    """Base class for all Polaris errors."""


# -------------------------
# Remote source
# -------------------------

class SourceError(PolarisError):
    """Base class for failures talking to the media server."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class SourceUnavailable(SourceError):
    """
    Connection failure, timeout or 5xx from the media server.
    Safe to retry the same page.
    """

    retryable = True


class SourceAuthFailed(SourceError):
    """401/403 or missing credentials. Retrying will not help."""


class SourceMalformed(SourceError):
    """A single remote record did not have the expected shape."""

    def __init__(self, message: str, record: Any = None) -> None:
        super().__init__(message)
        self.record = record


# -------------------------
# Store / orchestration
# -------------------------

class ConflictError(PolarisError):
    """
    A sync was triggered while another run for the same server is
    still pending or running. Carries the run that is already active.
    """

    def __init__(self, active_run: Dict[str, Any]) -> None:
        super().__init__(
            f"Server {active_run.get('server_id')} already has an active "
            f"run ({active_run.get('id')}, {active_run.get('status')})"
        )
        self.active_run = active_run

    @property
    def run_id(self) -> Optional[int]:
        return self.active_run.get("id")


class StoreWriteFailed(PolarisError):
    def __init__(self, message: str, record: Any = None) -> None:
        super().__init__(message)
        self.record = record


class ServerNotFound(PolarisError, LookupError):
    pass


class RunNotFound(PolarisError, LookupError):
    pass
