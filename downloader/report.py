"""Pydantic models summarizing a materialization run."""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field

from common.exceptions import (
    BundleNotFoundError,
    FormatError,
    IntegrityError,
    NetworkError,
)


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    NETWORK = "network"
    INTEGRITY = "integrity"
    IO = "io"
    FORMAT = "format"
    CANCELLED = "cancelled"


class FileError(BaseModel):
    """Failure of a single requested file."""
    path: str
    kind: ErrorKind
    message: str


class MaterializeReport(BaseModel):
    """Outcome of a materialization run."""
    manifest_id: str
    files_requested: int = 0
    files_written: List[str] = Field(default_factory=list)
    files_unchanged: List[str] = Field(default_factory=list)
    errors: List[FileError] = Field(default_factory=list)
    bytes_downloaded: int = 0
    bytes_skipped: int = 0
    bytes_written: int = 0
    fetch_count: int = 0
    chunks_fetched: int = 0
    chunks_cached: int = 0
    chunks_reused: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled

    def add_error(self, path: str, kind: ErrorKind, message: str) -> FileError:
        error = FileError(path=path, kind=kind, message=message)
        self.errors.append(error)
        return error

    def failed_paths(self) -> List[str]:
        return [e.path for e in self.errors]

    def error_for(self, path: str):
        return next((e for e in self.errors if e.path == path), None)


def error_kind_for(error: Exception) -> ErrorKind:
    """Classify an exception for reporting."""
    if isinstance(error, BundleNotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(error, NetworkError):
        return ErrorKind.NETWORK
    if isinstance(error, IntegrityError):
        return ErrorKind.INTEGRITY
    if isinstance(error, FormatError):
        return ErrorKind.FORMAT
    return ErrorKind.IO
