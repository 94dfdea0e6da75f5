"""Local chunk cache: decompressed chunk bytes keyed by chunk id."""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from common.constants import CHUNK_FILE_SUFFIX, DEFAULT_CHUNK_STORE_PATH, TEMP_FILE_SUFFIX
from common.exceptions import ChunkNotFoundError, IntegrityError, LocalIOError
from rman.hashing import verify_chunk_id
from rman.ids import format_id
from rman.types import HashType

logger = logging.getLogger(__name__)


class ChunkStore:
    """
    Directory-backed chunk cache.

    Layout: `<root>/<2 first hex digits>/<CHUNK_ID>.chk`. Entries are
    write-once: a write publishes a complete temporary file with a hard
    link, so the first writer wins and readers never see partial data.
    """

    def __init__(self, root: Union[str, Path] = DEFAULT_CHUNK_STORE_PATH):
        self.root = Path(root)

    def ensure_directory(self) -> None:
        """Ensure store root directory exists."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LocalIOError(f"cannot create chunk store {self.root}: {e}") from e

    def path_for(self, chunk_id: int) -> Path:
        """
        Get file path for a chunk.

        Args:
            chunk_id: 64-bit chunk id

        Returns:
            Path object for chunk file
        """
        name = format_id(chunk_id)
        return self.root / name[:2] / f"{name}{CHUNK_FILE_SUFFIX}"

    def has(self, chunk_id: int) -> bool:
        return self.path_for(chunk_id).is_file()

    def size(self, chunk_id: int) -> Optional[int]:
        """
        Get size of a cached chunk in bytes.

        Returns:
            Size in bytes, or None if chunk is not cached
        """
        try:
            return self.path_for(chunk_id).stat().st_size
        except FileNotFoundError:
            return None
        except OSError as e:
            raise LocalIOError(f"cannot stat chunk {format_id(chunk_id)}: {e}") from e

    def read(self, chunk_id: int) -> bytes:
        """
        Read a cached chunk.

        Raises:
            ChunkNotFoundError: If chunk is not cached
            LocalIOError: If read operation fails
        """
        try:
            return self.path_for(chunk_id).read_bytes()
        except FileNotFoundError:
            raise ChunkNotFoundError(f"chunk {format_id(chunk_id)} is not cached")
        except OSError as e:
            raise LocalIOError(f"cannot read chunk {format_id(chunk_id)}: {e}") from e

    def write(self, chunk_id: int, data: bytes) -> bool:
        """
        Store chunk data, once.

        Args:
            chunk_id: 64-bit chunk id
            data: Decompressed chunk bytes

        Returns:
            True if the chunk was stored, False if an identical entry existed

        Raises:
            IntegrityError: If an entry exists with different bytes
            LocalIOError: If write operation fails
        """
        path = self.path_for(chunk_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f"{path.name}.", suffix=TEMP_FILE_SUFFIX, dir=path.parent)
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                try:
                    os.link(tmp_name, path)
                    created = True
                except FileExistsError:
                    created = False
            finally:
                os.unlink(tmp_name)
        except OSError as e:
            raise LocalIOError(f"cannot write chunk {format_id(chunk_id)}: {e}") from e

        if not created:
            existing = self.read(chunk_id)
            if existing != data:
                raise IntegrityError(
                    f"chunk {format_id(chunk_id)} already cached with different content "
                    f"({len(existing)} vs {len(data)} bytes)"
                )
            logger.debug(f"Chunk {format_id(chunk_id)} already cached")
        return created

    def discard(self, chunk_id: int) -> bool:
        """
        Remove a cached chunk, so that it can be replaced.

        Returns:
            True if the entry was removed, False if it didn't exist
        """
        try:
            self.path_for(chunk_id).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise LocalIOError(f"cannot remove chunk {format_id(chunk_id)}: {e}") from e

    def verify(self, chunk_id: int, hash_type: HashType) -> bool:
        """Recompute the id of a cached chunk and compare it."""
        return verify_chunk_id(self.read(chunk_id), chunk_id, hash_type)

    def list_chunks(self) -> List[int]:
        """
        List all chunk ids in the store.
        """
        if not self.root.exists():
            return []

        chunk_ids = []
        for filepath in self.root.glob(f"*/*{CHUNK_FILE_SUFFIX}"):
            try:
                chunk_ids.append(int(filepath.stem, 16))
            except ValueError:
                logger.warning(f"Ignoring unexpected file in chunk store: {filepath}")
        return chunk_ids


class MemoryChunkStore:
    """
    In-memory chunk cache with the same contract as ChunkStore.
    """

    def __init__(self):
        self._chunks: Dict[int, bytes] = {}
        self._lock = threading.Lock()

    def has(self, chunk_id: int) -> bool:
        with self._lock:
            return chunk_id in self._chunks

    def size(self, chunk_id: int) -> Optional[int]:
        with self._lock:
            data = self._chunks.get(chunk_id)
        return None if data is None else len(data)

    def read(self, chunk_id: int) -> bytes:
        with self._lock:
            data = self._chunks.get(chunk_id)
        if data is None:
            raise ChunkNotFoundError(f"chunk {format_id(chunk_id)} is not cached")
        return data

    def write(self, chunk_id: int, data: bytes) -> bool:
        with self._lock:
            existing = self._chunks.get(chunk_id)
            if existing is None:
                self._chunks[chunk_id] = bytes(data)
                return True
        if existing != data:
            raise IntegrityError(f"chunk {format_id(chunk_id)} already cached with different content")
        return False

    def discard(self, chunk_id: int) -> bool:
        with self._lock:
            return self._chunks.pop(chunk_id, None) is not None

    def verify(self, chunk_id: int, hash_type: HashType) -> bool:
        return verify_chunk_id(self.read(chunk_id), chunk_id, hash_type)

    def list_chunks(self) -> List[int]:
        with self._lock:
            return list(self._chunks)
