"""Exception types raised by the CalDAV sync stack."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all synchronisation failures."""


class ConfigurationError(SyncError):
    """Raised when CalDAV sync is requested without a usable configuration."""


class RemoteError(SyncError):
    """A WebDAV/CalDAV request failed (non-2xx response or transport error)."""

    def __init__(self, message: str, *, status_code: int | None = None, url: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.url = url

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (HTTP {self.status_code})"
        return base


class ServerUnreachableError(RemoteError):
    """The server could not be contacted at all (DNS, refused connection, connect timeout)."""


class DavResponseError(RemoteError):
    """A multistatus response body could not be parsed."""


class ICalParseError(SyncError):
    """An iCalendar resource could not be turned into a task record."""

    def __init__(self, message: str, *, href: str | None = None):
        super().__init__(message)
        self.href = href
