"""Error taxonomy for transfer operations."""

from __future__ import annotations


class TransferError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(TransferError):
    """Malformed or missing request fields."""

    status_code = 400


class NotFoundError(TransferError):
    """Unknown transfer or file, or an artifact missing on disk."""

    status_code = 404


class AlreadyCompleteError(TransferError):
    """Ingestion or finalize attempted on a transfer that is already ready."""

    status_code = 409


class NotReadyError(TransferError):
    """Download requested before the transfer was finalized."""

    status_code = 409


class ExpiredError(TransferError):
    """Transfer is past its expiration time."""

    status_code = 410


class StorageError(TransferError):
    """Disk read/write failure in a landing area or artifact slot."""

    status_code = 500
