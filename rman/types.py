"""Manifest record types (Chunk, Bundle, File, Directory, ...).

Records reference each other by 64-bit id, never by object, so the
Manifest owns flat tables and nothing forms a cycle.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import FrozenSet, Optional, Tuple


class Compression(Enum):
    """Compression applied to a chunk inside its bundle."""
    RAW = "raw"
    ZSTD = "zstd"


class HashType(IntEnum):
    """Algorithm deriving a chunk id from the chunk's uncompressed bytes."""
    NONE = 0
    SHA512 = 1
    SHA256 = 2
    HKDF = 3


class FilePermissions(IntEnum):
    EXECUTABLE = 1
    REGULAR = 2


@dataclass(frozen=True)
class Chunk:
    """
    A unit of content, located in a bundle.

    `bundle_offset` is the offset of the compressed bytes in the bundle
    stream; chunks of a bundle are stored back to back.
    """
    chunk_id: int
    bundle_id: int
    bundle_offset: int
    compressed_size: int
    uncompressed_size: int
    compression: Compression = Compression.ZSTD

    @property
    def bundle_end(self) -> int:
        return self.bundle_offset + self.compressed_size


@dataclass(frozen=True)
class Bundle:
    """
    Remote object aggregating independently compressed chunks.
    """
    bundle_id: int
    chunk_ids: Tuple[int, ...]
    size: int


@dataclass(frozen=True)
class Directory:
    directory_id: int
    parent_id: Optional[int]
    name: str


@dataclass(frozen=True)
class LocaleEntry:
    """Locale declared by a manifest; `locale_id` is its bit in file masks."""
    locale_id: int
    code: str


@dataclass(frozen=True)
class ChunkingParams:
    hash_type: HashType
    max_uncompressed: int = 0


@dataclass(frozen=True)
class File:
    """
    A file of the manifest virtual tree.

    Content is the concatenation of `chunk_ids`, in order. An empty
    `locales` set means the file is used by every locale.
    """
    file_id: int
    path: str
    name: str
    directory_id: Optional[int]
    size: int
    chunk_ids: Tuple[int, ...]
    locales: FrozenSet[str] = field(default_factory=frozenset)
    link: Optional[str] = None
    hash_type: HashType = HashType.NONE
    permissions: int = FilePermissions.REGULAR
    content_hash: Optional[str] = None

    @property
    def is_link(self) -> bool:
        return bool(self.link)

    @property
    def is_executable(self) -> bool:
        return self.permissions == FilePermissions.EXECUTABLE

    def matches_locale(self, locale: Optional[str]) -> bool:
        if locale is None or not self.locales:
            return True
        return locale in self.locales


@dataclass(frozen=True)
class FileChunkRange:
    """
    Byte ranges of one file chunk, both in its bundle and in the target file.
    Ranges are half-open `(begin, end)` tuples.
    """
    chunk_id: int
    bundle: Tuple[int, int]
    target: Tuple[int, int]
