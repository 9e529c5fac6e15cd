"""
Error taxonomy for the data-access layer.

Every error surfaces immediately to the caller; nothing here is retried.
"""

from typing import Optional


class RapidStoreError(Exception):
    """Base class for all store errors."""


class InvalidResource(RapidStoreError):
    """Unrecognized or malformed resource path, or an operation the kind does not support."""

    def __init__(self, path: str, reason: Optional[str] = None):
        self.path = path
        self.reason = reason
        message = f"Unknown resource path: {path!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ValidationError(RapidStoreError):
    """A mutation payload is missing a required field or carries an invalid value."""

    def __init__(self, field: str, reason: str = "field required"):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class NotFound(RapidStoreError):
    """A referenced entity needed to resolve a request does not exist."""


class StorageError(RapidStoreError):
    """The underlying database failed or affected no row where one was expected."""
