"""Custom exception classes shared by the manifest model, chunk store and downloader."""

from typing import Optional


class RmanError(Exception):
    """
    Base exception class for all manifest and download errors.
    """
    pass


class FormatError(RmanError):
    """
    Raised when a manifest is malformed, truncated or internally inconsistent.
    Never retried: the manifest itself cannot be trusted.
    """
    pass


class NetworkError(RmanError):
    """
    Raised when a CDN request fails (transport error, timeout, bad status).
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BundleNotFoundError(NetworkError):
    """
    Raised when the CDN answers 404 for a bundle or manifest.
    """
    pass


class IntegrityError(RmanError):
    """
    Raised when chunk or file content does not match its declared size or hash.
    """
    pass


class LocalIOError(RmanError):
    """
    Raised when the local filesystem fails (disk full, permissions, bad path).
    """
    pass


class ChunkNotFoundError(RmanError):
    """
    Raised when a chunk is requested from a store that does not hold it.
    """
    pass
