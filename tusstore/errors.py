"""Error types raised by the upload stores and lockers."""

from __future__ import annotations

from collections.abc import Iterable


class TusError(Exception):
    """Base class for every error raised by this package."""


class HTTPError(TusError):
    """An error that maps onto an HTTP status code."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class NotFoundError(HTTPError):
    """The requested upload does not exist."""

    def __init__(self) -> None:
        super().__init__("upload not found", 404)


class FileLockedError(HTTPError):
    """The upload is locked by another request."""

    def __init__(self) -> None:
        super().__init__("file currently locked", 423)


class S3ServiceError(TusError):
    """An error reported by the S3 service, identified by its code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class MultiError(TusError):
    """Several errors that occurred during one operation."""

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors = list(errors)
        lines = "".join(f"\t{err}\n" for err in self.errors)
        super().__init__(f"Multiple errors occurred:\n{lines}")


def is_service_error(err: BaseException | None, code: str) -> bool:
    """Tell whether ``err`` is an S3 service error carrying ``code``."""
    return isinstance(err, S3ServiceError) and err.code == code