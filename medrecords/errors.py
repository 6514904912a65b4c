"""
Error taxonomy for the record engine.

The API layer maps each class to an HTTP status (see ``medrecords.main``):

- ValidationError          400  malformed input, never retried
- NotFoundError            404  record / version / grant absent
- AuthorizationError       403  caller lacks the required level
- ConflictError            409  lost a version race, safe to retry with a fresh read
- StorageUnavailableError  503  the database could not persist the operation
"""

from __future__ import annotations


class RecordsError(Exception):
    """Base class for every error raised by the engine."""

    status_code = 500

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class ValidationError(RecordsError):
    status_code = 400


class NotFoundError(RecordsError):
    status_code = 404


class VersionNotFoundError(NotFoundError):
    pass


class AuthorizationError(RecordsError):
    status_code = 403


class ConflictError(RecordsError):
    status_code = 409


class StorageUnavailableError(RecordsError):
    status_code = 503


class ImmutableRecordError(RecordsError):
    """Raised when something tries to edit or delete a history or audit row."""
