from __future__ import annotations


class MonzoSyncError(Exception):
    """Base error for every failure raised by monzo_sync."""


class ConfigurationError(MonzoSyncError):
    """Raised when required settings are missing or malformed."""


class Unauthorized(MonzoSyncError):
    """Raised when no valid access token can be obtained.

    Covers a missing token, an expired token that cannot be refreshed and a
    401 from the API. The user has to re-run the authorization flow.
    """


class WindowRejected(MonzoSyncError):
    """Raised when a fetch window falls outside what the access grant permits."""

    def __init__(self, message: str, *, since: object = None, until: object = None):
        super().__init__(message)
        self.since = since
        self.until = until


class RemoteUnavailable(MonzoSyncError):
    """Raised when the API keeps failing transiently after all retries."""


class RemoteRejected(MonzoSyncError):
    """Raised when the API permanently rejects a request (4xx other than 401/429)."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Monzo API rejected request ({status}): {body}")
        self.status = status
        self.body = body


class IntegrityViolation(MonzoSyncError):
    """Raised when a write would break a foreign-key invariant."""
