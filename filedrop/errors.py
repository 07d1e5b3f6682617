"""Failure taxonomy for uploads and downloads.

The storage and parsing layers raise these; the HTTP layer in ``main.py``
translates them into status codes with client-safe messages.
"""


class FileDropError(Exception):
    """Base class for all upload/download failures."""


class ValidationError(FileDropError):
    """The request is malformed or carries no usable file part."""


class InvalidStorageKey(ValidationError):
    """A storage key failed validation (bad characters, traversal, length)."""

    def __init__(self, storage_key: str):
        super().__init__(f"Invalid storage key: {storage_key!r}")
        self.storage_key = storage_key


class SizeLimitExceeded(FileDropError):
    """The upload grew past the configured size ceiling."""

    def __init__(self, limit: int):
        super().__init__(f"File exceeds maximum allowed size of {limit} bytes")
        self.limit = limit


class StorageIOError(FileDropError):
    """Writing to or reading from the storage directory failed."""


class NotFound(FileDropError):
    """No stored file exists under the requested key."""

    def __init__(self, storage_key: str):
        super().__init__(f"No stored file for key {storage_key!r}")
        self.storage_key = storage_key


class UploadAborted(FileDropError):
    """The client went away before the upload completed."""
