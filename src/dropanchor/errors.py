"""
Error taxonomy for the Anchor core.

Every failure the core surfaces to its caller is one of the exceptions below.
Each carries a ``reason`` so callers can branch without string matching:

- AuthError: login, token refresh and session availability
- RecordError: PDS record primitives (IntegrityError for CID mismatches)
- PublishError: the check-in publish pipeline
- CrosspostError: the optional feed crosspost, reported as a warning
- StorageError: credential store write failures
"""

from enum import Enum
from typing import Any, Dict, Optional


class AuthFailure(str, Enum):
    invalid_credentials = "invalid_credentials"
    network = "network"
    server_error = "server_error"
    refresh_rejected = "refresh_rejected"
    not_authenticated = "not_authenticated"
    reauthentication_required = "reauthentication_required"


class RecordFailure(str, Enum):
    network = "network"
    validation = "validation"
    server_error = "server_error"
    not_found = "not_found"


class PublishFailure(str, Enum):
    address_write_failed = "address_write_failed"
    checkin_write_failed = "checkin_write_failed"


class CrosspostFailure(str, Enum):
    network = "network"
    server_error = "server_error"


class AnchorError(Exception):
    """Base exception for all errors raised by the Anchor core."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthError(AnchorError):
    """Raised when a session cannot be established, refreshed or used."""

    def __init__(
        self,
        reason: AuthFailure,
        message: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message or reason.value, {"status": status})
        self.reason = reason
        self.status = status

    @property
    def transient(self) -> bool:
        """Whether the failure is worth retrying (network or 5xx)."""
        return self.reason in (AuthFailure.network, AuthFailure.server_error)


class RecordError(AnchorError):
    """Raised by the PDS record primitives."""

    def __init__(
        self,
        reason: RecordFailure,
        message: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message or reason.value, {"status": status})
        self.reason = reason
        self.status = status


class IntegrityError(RecordError):
    """
    Raised when a record's current CID no longer matches the CID of a StrongRef.

    The record was changed after the reference was taken. This is never
    accepted silently.
    """

    def __init__(self, uri: str, expected_cid: str, actual_cid: str):
        super().__init__(
            RecordFailure.validation,
            f"Record {uri} changed: expected cid {expected_cid}, got {actual_cid}",
        )
        self.uri = uri
        self.expected_cid = expected_cid
        self.actual_cid = actual_cid


class PublishError(AnchorError):
    """
    Raised when a check-in publish fails.

    When the check-in write fails after the address record was written,
    ``address_ref`` holds the address StrongRef so a retry can reuse it.
    """

    def __init__(
        self,
        reason: PublishFailure,
        message: Optional[str] = None,
        address_ref: Optional[Any] = None,
    ):
        super().__init__(message or reason.value)
        self.reason = reason
        self.address_ref = address_ref


class CrosspostError(AnchorError):
    """Raised when the optional feed crosspost fails."""

    def __init__(self, reason: CrosspostFailure, message: Optional[str] = None):
        super().__init__(message or reason.value)
        self.reason = reason


class StorageError(AnchorError):
    """Raised when a credential store cannot persist or clear credentials."""
