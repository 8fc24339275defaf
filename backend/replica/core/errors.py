"""Error kinds raised by the remote client and the layer services.

The remote client raises these; the downloader turns them into a single
human readable message and the sync coordinator counts them into
statistics. None of them is expected to cross the pull/push boundary.
"""

from __future__ import annotations


class ReplicaError(Exception):
    """Base exception for every replica error."""


class NetworkUnavailable(ReplicaError):
    """Raised before any request is attempted when the device is offline."""

    def __init__(self, message: str = "Network is unavailable") -> None:
        super().__init__(message)


class TransportFailure(ReplicaError):
    """Raised on a non-200 response or a failed HTTP exchange.

    Attributes:
        status_code: HTTP status of the response, None when the request
            never produced one (connection reset, timeout, ...).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(ReplicaError):
    """Raised when a payload is not JSON or lacks required members."""


class UnsupportedReference(ReplicaError):
    """Raised when a layer declares a coordinate system we cannot handle."""

    def __init__(self, srid: int) -> None:
        super().__init__(f"Coordinate reference system {srid} is not supported")
        self.srid = srid


class ChangeQueueLogicError(ReplicaError):
    """Raised internally when a caller asks for an impossible transition."""


class LayerNotFound(ReplicaError):
    """Raised when a layer document does not exist."""
