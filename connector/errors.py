"""
Error taxonomy shared by the transport, the facades and the coordinators.

Every failure the connector reports carries a distinguishable ``kind`` so
that user-facing layers can render a localized message without parsing
prose.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    TRANSPORT_FAILURE = "transport_failure"
    REMOTE_REJECTED = "remote_rejected"
    NO_CREDENTIAL = "no_credential"
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    PERSISTENCE_FAILURE = "persistence_failure"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    NOT_FOUND = "not_found"


class ConnectorError(RuntimeError):
    """Base class for every typed connector failure."""

    kind: ErrorKind = ErrorKind.TRANSPORT_FAILURE

    def __init__(self, message: str, *, status: int | None = None, details: Any | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.details = details

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, status={self.status!r})"


class TransportFailure(ConnectorError):
    """Network error, timeout, non-2xx response or unreadable body."""

    kind = ErrorKind.TRANSPORT_FAILURE


class RemoteRejected(ConnectorError):
    """The remote answered, but its payload reports an application error."""

    kind = ErrorKind.REMOTE_REJECTED

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status: int | None = None,
        details: Any | None = None,
    ):
        super().__init__(message, status=status, details=details)
        self.code = code


class NoCredential(ConnectorError):
    kind = ErrorKind.NO_CREDENTIAL


class MissingRefreshToken(ConnectorError):
    """Fatal: the portal must be re-authorized by a person."""

    kind = ErrorKind.MISSING_REFRESH_TOKEN


class PersistenceFailure(ConnectorError):
    kind = ErrorKind.PERSISTENCE_FAILURE


class Cancelled(ConnectorError):
    kind = ErrorKind.CANCELLED


class TimedOut(ConnectorError):
    kind = ErrorKind.TIMED_OUT


class NotFound(ConnectorError):
    kind = ErrorKind.NOT_FOUND


__all__ = [
    "Cancelled",
    "ConnectorError",
    "ErrorKind",
    "MissingRefreshToken",
    "NoCredential",
    "NotFound",
    "PersistenceFailure",
    "RemoteRejected",
    "TimedOut",
    "TransportFailure",
]
