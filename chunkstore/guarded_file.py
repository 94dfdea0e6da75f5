"""Scoped temporary files renamed into place on success and removed otherwise."""

import json
import os
from pathlib import Path
from typing import Any, Optional, Union

from common.constants import TEMP_FILE_SUFFIX


class GuardedFile:
    """
    Write a file through a `<name>.tmp` sibling.

    The temporary is renamed over the target by `persist()`; on any other
    exit from the `with` block (error, cancellation, early return) it is
    removed, so the target path only ever holds a complete file.

    Usage:
        with GuardedFile(path) as gfile:
            gfile.write(data)
            gfile.persist()
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.tmp_path = self.path.with_name(self.path.name + TEMP_FILE_SUFFIX)
        self._file = None
        self._persisted = False

    def open(self) -> 'GuardedFile':
        """Create parent directories and open the temporary file for writing."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.tmp_path, 'w+b')
        return self

    def __enter__(self) -> 'GuardedFile':
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        if not self._persisted:
            self.discard()
        return False

    @property
    def file(self):
        if self._file is None:
            raise ValueError("GuardedFile is not open")
        return self._file

    def write(self, data: bytes) -> int:
        return self.file.write(data)

    def persist(self, mode: Optional[int] = None) -> Path:
        """
        Flush the temporary file and atomically rename it onto the target.

        Args:
            mode: Optional permission bits to apply before the rename
        """
        f = self.file
        f.flush()
        os.fsync(f.fileno())
        f.close()
        self._file = None
        if mode is not None:
            os.chmod(self.tmp_path, mode)
        os.replace(self.tmp_path, self.path)
        self._persisted = True
        return self.path

    def discard(self) -> None:
        """Close and remove the temporary file, if any."""
        if self._file is not None:
            self._file.close()
            self._file = None
        try:
            self.tmp_path.unlink()
        except FileNotFoundError:
            pass


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """Atomically write bytes to `path`."""
    with GuardedFile(path) as gfile:
        gfile.write(data)
        gfile.persist()


def atomic_write_json(path: Union[str, Path], obj: Any, *, indent: int = 2) -> None:
    """Atomically write JSON to `path`."""
    atomic_write_bytes(path, json.dumps(obj, indent=indent).encode('utf-8'))
