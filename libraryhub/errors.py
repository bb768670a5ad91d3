"""Exceptions raised by the services and mapped to HTTP responses by the API."""

from typing import Any, Optional


class LibraryError(Exception):
    """Base class for expected, client-facing failures."""

    status_code = 500

    def __init__(self, message: str, error: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.error = error

    def to_dict(self):
        payload = {"message": self.message}
        if self.error is not None:
            payload["error"] = self.error
        return payload


class NotFoundError(LibraryError):
    status_code = 404


class ConflictError(LibraryError):
    status_code = 400


class ForbiddenError(LibraryError):
    status_code = 403


class UnauthorizedError(LibraryError):
    status_code = 401


class ValidationError(LibraryError):
    status_code = 422
