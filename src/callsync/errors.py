"""Exception hierarchy for the call sync engine."""

from __future__ import annotations

# HTTP statuses that will not succeed on replay: malformed request, bad or
# missing credentials, unknown table/endpoint, schema rejection.
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 422})


class CallSyncError(RuntimeError):
    """Base call sync error."""


class ConfigError(CallSyncError):
    """Raised when sync configuration is missing, malformed, or invalid."""


class SyncInProgressError(CallSyncError):
    """Raised when an operation requires the orchestrator to be idle."""


class RemoteRequestError(CallSyncError):
    """Raised when a remote API responds with a non-2xx status or bad payload."""

    service = "remote"

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"{self.service} request failed ({status_code}): {message}")

    @property
    def permanent(self) -> bool:
        """True when replaying the same request cannot succeed."""
        return self.status_code in PERMANENT_STATUS_CODES


class SourceRequestError(RemoteRequestError):
    """Raised when the call-event feed request fails."""

    service = "Call feed"


class DestinationRequestError(RemoteRequestError):
    """Raised when the CRM destination request fails."""

    service = "Destination"
