"""Manifest aggregate: owns bundle, chunk and file tables and answers queries on them."""

import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from common.constants import RMAN_REQUIRED_FLAG, RMAN_SUPPORTED_VERSION
from common.exceptions import ChunkNotFoundError, FormatError, LocalIOError
from rman.locale import normalize_locale
from rman.patterns import PathPattern, match_any
from rman.tree import DirectoryNode, build_tree
from rman.types import Bundle, Chunk, Directory, File, FileChunkRange, LocaleEntry

logger = logging.getLogger(__name__)


class Manifest:
    """
    Decoded release manifest.

    Tables are flat and keyed by id: `bundles` (bundle id -> Bundle),
    `chunks` (chunk id -> Chunk, global across bundles) and `files`.
    A chunk id listed by several bundles resolves to its first location;
    all copies are byte-identical.

    Construction validates cross references and raises FormatError on
    inconsistencies, whether the tables come from `decode` or from a caller.
    """

    def __init__(
        self,
        manifest_id: int,
        bundles: Iterable[Bundle],
        chunks: Iterable[Chunk],
        files: Iterable[File],
        directories: Iterable[Directory] = (),
        locales: Iterable[LocaleEntry] = (),
        version: Tuple[int, int] = RMAN_SUPPORTED_VERSION,
        flags: int = RMAN_REQUIRED_FLAG,
    ):
        self.manifest_id = manifest_id
        self.version = tuple(version)
        self.flags = flags
        self.directories: List[Directory] = list(directories)
        self.locales: List[LocaleEntry] = list(locales)

        self.bundles: Dict[int, Bundle] = {}
        for bundle in bundles:
            if bundle.bundle_id in self.bundles:
                raise FormatError(f"duplicate bundle {bundle.bundle_id:016X}")
            self.bundles[bundle.bundle_id] = bundle

        self.chunks: Dict[int, Chunk] = {}
        for chunk in chunks:
            self._index_chunk(chunk)

        self.files: List[File] = []
        self._files_by_path: Dict[str, File] = {}
        for file in files:
            self._index_file(file)

        self._tree: Optional[DirectoryNode] = None

    def _index_chunk(self, chunk: Chunk) -> None:
        bundle = self.bundles.get(chunk.bundle_id)
        if bundle is None:
            raise FormatError(f"chunk {chunk.chunk_id:016X} is in unknown bundle {chunk.bundle_id:016X}")
        if chunk.bundle_offset < 0 or chunk.bundle_end > bundle.size:
            raise FormatError(
                f"chunk {chunk.chunk_id:016X} range {chunk.bundle_offset}-{chunk.bundle_end} "
                f"exceeds bundle {chunk.bundle_id:016X} size {bundle.size}"
            )
        existing = self.chunks.get(chunk.chunk_id)
        if existing is None:
            self.chunks[chunk.chunk_id] = chunk
        elif existing.uncompressed_size != chunk.uncompressed_size:
            raise FormatError(f"chunk {chunk.chunk_id:016X} declared with different sizes")

    def _index_file(self, file: File) -> None:
        if file.path in self._files_by_path:
            raise FormatError(f"duplicate file path {file.path!r}")
        total = 0
        for chunk_id in file.chunk_ids:
            chunk = self.chunks.get(chunk_id)
            if chunk is None:
                raise FormatError(f"file {file.path!r} references unknown chunk {chunk_id:016X}")
            total += chunk.uncompressed_size
        if not file.is_link and total != file.size:
            raise FormatError(
                f"file {file.path!r} declares {file.size} bytes but its chunks sum to {total}"
            )
        self.files.append(file)
        self._files_by_path[file.path] = file

    @classmethod
    def from_bytes(cls, data: bytes) -> 'Manifest':
        from rman.parser import decode
        return decode(data)

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Manifest':
        """
        Load a manifest from a local file.

        Raises:
            LocalIOError: If the file cannot be read
            FormatError: If its content is not a valid manifest
        """
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise LocalIOError(f"cannot read manifest {path}: {e}") from e
        manifest = cls.from_bytes(data)
        logger.info(f"Loaded manifest {manifest.manifest_id:016X} from {path} ({len(manifest.files)} files)")
        return manifest

    def iter_files(
        self,
        prefix: Optional[str] = None,
        locale: Optional[str] = None,
        patterns: Optional[Sequence[Union[str, PathPattern]]] = None,
    ) -> Iterator[File]:
        """
        Enumerate files, in manifest order.

        Args:
            prefix: Only keep paths starting with this prefix
            locale: Only keep files used by this locale (files without locales always match)
            patterns: Only keep paths matching at least one `*`-wildcard pattern
        """
        if locale is not None:
            locale = normalize_locale(locale)
        compiled = None
        if patterns is not None:
            compiled = [p if isinstance(p, PathPattern) else PathPattern(p) for p in patterns]

        for file in self.files:
            if prefix is not None and not file.path.startswith(prefix):
                continue
            if not file.matches_locale(locale):
                continue
            if compiled is not None and not match_any(compiled, file.path):
                continue
            yield file

    def get_file(self, path: str) -> Optional[File]:
        return self._files_by_path.get(path)

    def file_chunks(self, file: File) -> List[Chunk]:
        """Return the chunks of a file, in content order."""
        return [self.chunks[chunk_id] for chunk_id in file.chunk_ids]

    def get_chunk(self, chunk_id: int) -> Chunk:
        try:
            return self.chunks[chunk_id]
        except KeyError:
            raise ChunkNotFoundError(f"chunk {chunk_id:016X} is not in manifest {self.manifest_id:016X}")

    def chunk_location(self, chunk_id: int) -> Tuple[int, int, int]:
        """Return `(bundle_id, offset, compressed_length)` of a chunk."""
        chunk = self.get_chunk(chunk_id)
        return chunk.bundle_id, chunk.bundle_offset, chunk.compressed_size

    def file_size(self, file: File) -> int:
        return sum(self.chunks[chunk_id].uncompressed_size for chunk_id in file.chunk_ids)

    def required_chunks(self, files: Iterable[File]) -> Dict[int, Chunk]:
        """Distinct chunks needed by files, in first-use order."""
        required: Dict[int, Chunk] = {}
        for file in files:
            for chunk_id in file.chunk_ids:
                if chunk_id not in required:
                    required[chunk_id] = self.chunks[chunk_id]
        return required

    def download_size(self, files: Iterable[File]) -> int:
        """Compressed bytes to download for files, each distinct chunk counted once."""
        return sum(chunk.compressed_size for chunk in self.required_chunks(files).values())

    def bundle_ranges(self, file: File) -> Dict[int, List[FileChunkRange]]:
        """
        Group the chunks of a file by bundle.

        Returns:
            Map of bundle id to chunk ranges, each with its bundle byte range
            and its byte range in the target file
        """
        ranges: Dict[int, List[FileChunkRange]] = {}
        offset = 0
        for chunk in self.file_chunks(file):
            ranges.setdefault(chunk.bundle_id, []).append(FileChunkRange(
                chunk_id=chunk.chunk_id,
                bundle=(chunk.bundle_offset, chunk.bundle_end),
                target=(offset, offset + chunk.uncompressed_size),
            ))
            offset += chunk.uncompressed_size
        return ranges

    def bundle_chunks(self, bundle_id: int) -> List[Chunk]:
        bundle = self.bundles[bundle_id]
        return [
            chunk for chunk in (self.chunks[c] for c in bundle.chunk_ids)
            if chunk.bundle_id == bundle_id
        ]

    def locale_codes(self) -> List[str]:
        return sorted(entry.code for entry in self.locales)

    def tree(self) -> DirectoryNode:
        """Directory tree of all file paths, built on first use."""
        if self._tree is None:
            self._tree = build_tree(self.files)
        return self._tree

    def __repr__(self) -> str:
        return (
            f"Manifest(id={self.manifest_id:016X}, version={self.version[0]}.{self.version[1]}, "
            f"bundles={len(self.bundles)}, chunks={len(self.chunks)}, files={len(self.files)})"
        )
