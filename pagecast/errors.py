"""Error types raised by the pipeline and its collaborators.

Each error carries the HTTP status code it maps to so that the API layer
can translate any of them into a JSON response with a single handler.
"""

from __future__ import annotations


class PagecastError(Exception):
    """Base class for all errors raised by the service."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(PagecastError):
    """Malformed input. Raised before any state is created."""

    status_code = 400


class AuthorizationError(PagecastError):
    """The principal may not perform the requested operation."""

    status_code = 403

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(PagecastError):
    """A referenced book or chunk does not exist."""

    status_code = 404


class ConflictError(PagecastError):
    """A chunk with the same (book, chunk_number) already exists.

    The controller resolves this internally; it never reaches a client.
    """

    status_code = 409


class InFlightError(PagecastError):
    """A chunk of the book is still being processed."""

    status_code = 409


class ExternalServiceError(PagecastError):
    """The OCR engine, speech engine or blob store failed."""

    status_code = 502

    def __init__(self, message: str, service: str = "external") -> None:
        super().__init__(message)
        self.service = service
