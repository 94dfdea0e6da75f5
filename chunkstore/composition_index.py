"""Persistent record of materialized files: path -> manifest id and chunk composition."""

import json
import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from chunkstore.guarded_file import atomic_write_json
from common.constants import COMPOSITION_INDEX_FILENAME
from common.exceptions import LocalIOError
from rman.ids import format_id

logger = logging.getLogger(__name__)

INDEX_FORMAT_VERSION = 1


@dataclass
class CompositionEntry:
    """
    Composition of a materialized file.

    `chunks` lists `[chunk_id_hex, uncompressed_size]` pairs in file order,
    so the offset of every chunk in the file on disk can be recomputed.
    """
    path: str
    manifest_id: str
    size: int
    chunks: List[List] = field(default_factory=list)
    updated_at: str = ""

    def __post_init__(self):
        if not isinstance(self.size, int) or isinstance(self.size, bool):
            raise ValueError(f"invalid size for {self.path!r}: {self.size!r}")
        total = 0
        for pair in self.chunks:
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ValueError(f"invalid chunk entry for {self.path!r}: {pair!r}")
            chunk_hex, size = pair
            if not isinstance(chunk_hex, str) or not isinstance(size, int) or size < 0:
                raise ValueError(f"invalid chunk entry for {self.path!r}: {pair!r}")
            int(chunk_hex, 16)
            total += size
        if total != self.size:
            raise ValueError(f"chunk sizes of {self.path!r} add up to {total}, expected {self.size}")

    def chunk_ids(self) -> Tuple[int, ...]:
        return tuple(int(chunk_hex, 16) for chunk_hex, _ in self.chunks)

    def chunk_offsets(self) -> Dict[int, Tuple[int, int]]:
        """
        Map each chunk id to its `(offset, size)` in the file.
        A chunk repeated in the file keeps its first position.
        """
        offsets: Dict[int, Tuple[int, int]] = {}
        offset = 0
        for chunk_hex, size in self.chunks:
            offsets.setdefault(int(chunk_hex, 16), (offset, size))
            offset += size
        return offsets


class CompositionIndex:
    """
    Index of files written under a destination root.

    Stored as JSON at `<destination>/.rman-composition.json`. A missing or
    unreadable index means compositions are unknown, which only disables
    patching.
    """

    def __init__(self, index_path: Path):
        self.index_path = Path(index_path)
        self._entries: Dict[str, CompositionEntry] = {}

    @classmethod
    def for_destination(cls, destination_root: Path) -> 'CompositionIndex':
        return cls(Path(destination_root) / COMPOSITION_INDEX_FILENAME)

    def record(self, path: str, manifest_id: int, chunks: Sequence[Tuple[int, int]]) -> CompositionEntry:
        """
        Add or replace the composition of a file.

        Args:
            path: Manifest path of the file
            manifest_id: Manifest the file was materialized from
            chunks: `(chunk_id, uncompressed_size)` pairs in file order
        """
        entry = CompositionEntry(
            path=path,
            manifest_id=format_id(manifest_id),
            size=sum(size for _, size in chunks),
            chunks=[[format_id(chunk_id), size] for chunk_id, size in chunks],
            updated_at=datetime.now(timezone.utc).isoformat(),
        )
        self._entries[path] = entry
        return entry

    def get(self, path: str) -> Optional[CompositionEntry]:
        return self._entries.get(path)

    def remove(self, path: str) -> bool:
        return self._entries.pop(path, None) is not None

    def paths(self) -> List[str]:
        return list(self._entries)

    def count(self) -> int:
        return len(self._entries)

    def load_from_disk(self) -> bool:
        """
        Load entries from the index file.

        Returns:
            True if loaded, False if the file is missing or unreadable.
            An unreadable file is copied to `.json.bak` and ignored.
        """
        if not self.index_path.exists():
            logger.debug(f"No composition index at {self.index_path}")
            return False

        try:
            with open(self.index_path, 'r') as f:
                data = json.load(f)
            entries = {
                path: CompositionEntry(**entry)
                for path, entry in data.get('files', {}).items()
            }
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to parse composition index {self.index_path}: {e}")
            backup_path = self.index_path.with_suffix('.json.bak')
            try:
                shutil.copy(self.index_path, backup_path)
            except OSError as copy_error:
                logger.warning(f"Cannot back up composition index: {copy_error}")
            self._entries.clear()
            return False

        self._entries = entries
        logger.info(f"Loaded {len(self._entries)} file compositions from {self.index_path}")
        return True

    def save_to_disk(self) -> None:
        """
        Persist entries to the index file, atomically.

        Raises:
            LocalIOError: If write operation fails
        """
        data = {
            'version': INDEX_FORMAT_VERSION,
            'files': {path: asdict(entry) for path, entry in self._entries.items()},
        }
        try:
            atomic_write_json(self.index_path, data)
        except OSError as e:
            raise LocalIOError(f"cannot save composition index {self.index_path}: {e}") from e
        logger.debug(f"Saved {len(self._entries)} file compositions to {self.index_path}")
