"""
Decoding of RMAN release manifests.

A manifest is a 28-byte header followed by a zstd-compressed body. The body
is a flatbuffer: tables reach their fields through a vtable and refer to
vectors, strings and other tables with offsets relative to the referencing
field. Every read is bounds-checked; malformed input raises FormatError.
"""

import logging
import struct
from typing import Dict, List, Optional, Tuple

import zstandard

from common.constants import (
    RMAN_HEADER_SIZE,
    RMAN_MAGIC,
    RMAN_REQUIRED_FLAG,
    RMAN_SUPPORTED_VERSION,
)
from common.exceptions import FormatError
from rman.locale import InvalidLocaleError, Locale
from rman.types import (
    Bundle,
    Chunk,
    ChunkingParams,
    Compression,
    Directory,
    File,
    FilePermissions,
    HashType,
    LocaleEntry,
)

logger = logging.getLogger(__name__)

_HEADER_FIELDS = struct.Struct('<HIIQI')

# Field indices, in vtable order
ROOT_BUNDLES, ROOT_LOCALES, ROOT_FILES, ROOT_DIRECTORIES, ROOT_KEYS, ROOT_PARAMS = range(6)
BUNDLE_ID, BUNDLE_CHUNKS = range(2)
CHUNK_ID, CHUNK_COMPRESSED_SIZE, CHUNK_UNCOMPRESSED_SIZE = range(3)
LOCALE_ID, LOCALE_CODE = range(2)
FILE_ID = 0
FILE_DIRECTORY_ID = 1
FILE_SIZE = 2
FILE_NAME = 3
FILE_LOCALES = 4
FILE_CHUNKS = 7
FILE_LINK = 9
FILE_PARAMS_INDEX = 11
FILE_PERMISSIONS = 12
DIRECTORY_ID, DIRECTORY_PARENT_ID, DIRECTORY_NAME = range(3)
PARAMS_HASH_TYPE = 1
PARAMS_MAX_UNCOMPRESSED = 4


class RmanHeader:
    """Fields of the fixed-size container header."""

    __slots__ = ('version', 'flags', 'body_offset', 'compressed_length', 'manifest_id', 'body_length')

    def __init__(self, version, flags, body_offset, compressed_length, manifest_id, body_length):
        self.version = version
        self.flags = flags
        self.body_offset = body_offset
        self.compressed_length = compressed_length
        self.manifest_id = manifest_id
        self.body_length = body_length


class BodyReader:
    """Bounds-checked little-endian reads over the decompressed body."""

    def __init__(self, data: bytes):
        self.data = data
        self.size = len(data)

    def check(self, offset: int, length: int, what: str) -> None:
        if offset < 0 or length < 0 or offset + length > self.size:
            raise FormatError(
                f"{what} out of bounds (offset={offset}, length={length}, body size={self.size})"
            )

    def _unpack(self, fmt: str, offset: int, what: str):
        self.check(offset, struct.calcsize(fmt), what)
        return struct.unpack_from(fmt, self.data, offset)[0]

    def u8(self, offset: int) -> int:
        return self._unpack('<B', offset, "u8")

    def u16(self, offset: int) -> int:
        return self._unpack('<H', offset, "u16")

    def i32(self, offset: int) -> int:
        return self._unpack('<i', offset, "i32")

    def u32(self, offset: int) -> int:
        return self._unpack('<I', offset, "u32")

    def u64(self, offset: int) -> int:
        return self._unpack('<Q', offset, "u64")

    def follow(self, offset: int) -> int:
        """Read a relative offset at `offset`, return the absolute target."""
        target = offset + self.i32(offset)
        self.check(target, 0, "offset target")
        return target

    def string(self, offset: int) -> str:
        length = self.u32(offset)
        self.check(offset + 4, length, "string")
        raw = self.data[offset + 4:offset + 4 + length]
        try:
            return raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise FormatError(f"invalid UTF-8 string at offset {offset}: {e}") from e

    def table(self, offset: int) -> 'Table':
        return Table(self, offset)


class Table:
    """A flatbuffer table: fields are located through the table's vtable."""

    def __init__(self, body: BodyReader, pos: int):
        self.body = body
        self.pos = pos
        vtable = pos - body.i32(pos)
        vtable_size = body.u16(vtable)
        if vtable_size < 4 or vtable_size % 2:
            raise FormatError(f"invalid vtable size {vtable_size} for table at {pos}")
        body.check(vtable, vtable_size, "vtable")
        table_size = body.u16(vtable + 2)
        if table_size < 4:
            raise FormatError(f"invalid table size {table_size} for table at {pos}")
        body.check(pos, table_size, "table")
        self._vtable = vtable
        self._vtable_size = vtable_size
        self._table_size = table_size

    def field_pos(self, index: int, width: int) -> Optional[int]:
        slot = 4 + 2 * index
        if slot + 2 > self._vtable_size:
            return None
        offset = self.body.u16(self._vtable + slot)
        if offset == 0:
            return None
        if offset + width > self._table_size:
            raise FormatError(f"field {index} of table at {self.pos} exceeds the table")
        return self.pos + offset

    def u8(self, index: int, default: Optional[int] = None) -> Optional[int]:
        pos = self.field_pos(index, 1)
        return default if pos is None else self.body.u8(pos)

    def u32(self, index: int, default: Optional[int] = None) -> Optional[int]:
        pos = self.field_pos(index, 4)
        return default if pos is None else self.body.u32(pos)

    def u64(self, index: int, default: Optional[int] = None) -> Optional[int]:
        pos = self.field_pos(index, 8)
        return default if pos is None else self.body.u64(pos)

    def string(self, index: int) -> Optional[str]:
        pos = self.field_pos(index, 4)
        return None if pos is None else self.body.string(self.body.follow(pos))

    def tables(self, index: int) -> List['Table']:
        """Read a vector of tables; an absent field is an empty vector."""
        pos = self.field_pos(index, 4)
        if pos is None:
            return []
        start = self.body.follow(pos)
        count = self.body.u32(start)
        self.body.check(start + 4, 4 * count, "table vector")
        slots = range(start + 4, start + 4 + 4 * count, 4)
        return [self.body.table(self.body.follow(slot)) for slot in slots]

    def u64_vector(self, index: int) -> Tuple[int, ...]:
        pos = self.field_pos(index, 4)
        if pos is None:
            return ()
        start = self.body.follow(pos)
        count = self.body.u32(start)
        self.body.check(start + 4, 8 * count, "u64 vector")
        return struct.unpack_from(f'<{count}Q', self.body.data, start + 4)

    def required(self, value, what: str):
        if value is None:
            raise FormatError(f"missing {what} field in table at {self.pos}")
        return value


def parse_header(data: bytes) -> RmanHeader:
    """
    Parse and validate the container header.

    Raises:
        FormatError: On bad magic, unsupported version or flags, or truncated input
    """
    if len(data) < RMAN_HEADER_SIZE:
        raise FormatError(f"truncated header: {len(data)} bytes")
    if data[:4] != RMAN_MAGIC:
        raise FormatError(f"invalid magic: {data[:4]!r}")
    version = (data[4], data[5])
    if version != RMAN_SUPPORTED_VERSION:
        raise FormatError(f"unsupported version: {version[0]}.{version[1]}")

    flags, body_offset, compressed_length, manifest_id, body_length = _HEADER_FIELDS.unpack_from(data, 6)
    if not flags & RMAN_REQUIRED_FLAG:
        raise FormatError(f"unsupported flags: {flags:b}")
    if body_offset < RMAN_HEADER_SIZE:
        raise FormatError(f"invalid body offset (too short): {body_offset}")
    if body_offset + compressed_length > len(data):
        raise FormatError(
            f"truncated body: expected {compressed_length} bytes at offset {body_offset}, "
            f"got {max(0, len(data) - body_offset)}"
        )
    return RmanHeader(version, flags, body_offset, compressed_length, manifest_id, body_length)


def decompress_body(data: bytes, header: RmanHeader) -> bytes:
    compressed = data[header.body_offset:header.body_offset + header.compressed_length]
    try:
        body = zstandard.ZstdDecompressor().decompress(compressed, max_output_size=header.body_length)
    except zstandard.ZstdError as e:
        raise FormatError(f"cannot decompress manifest body: {e}") from e
    if len(body) != header.body_length:
        raise FormatError(f"body size mismatch: header says {header.body_length}, got {len(body)}")
    return body


def decode(data: bytes):
    """
    Decode a manifest blob.

    Args:
        data: Raw manifest bytes, as stored on the CDN

    Returns:
        Manifest instance

    Raises:
        FormatError: If the blob is malformed or internally inconsistent
    """
    from rman.manifest import Manifest

    header = parse_header(data)
    body = BodyReader(decompress_body(data, header))
    root = body.table(body.follow(0))

    locales = [_parse_locale(t) for t in root.tables(ROOT_LOCALES)]
    params = [_parse_params(t) for t in root.tables(ROOT_PARAMS)]

    bundles: List[Bundle] = []
    chunks: List[Chunk] = []
    for table in root.tables(ROOT_BUNDLES):
        bundle, bundle_chunks = _parse_bundle(table)
        bundles.append(bundle)
        chunks.extend(bundle_chunks)

    directories = [_parse_directory(t) for t in root.tables(ROOT_DIRECTORIES)]
    dir_paths = build_directory_paths(directories)

    files = [_parse_file(t, dir_paths, locales, params) for t in root.tables(ROOT_FILES)]

    logger.debug(
        f"Decoded manifest {header.manifest_id:016X}: {len(bundles)} bundles, "
        f"{len(chunks)} chunks, {len(files)} files"
    )

    return Manifest(
        manifest_id=header.manifest_id,
        bundles=bundles,
        chunks=chunks,
        files=files,
        directories=directories,
        locales=locales,
        version=header.version,
        flags=header.flags,
    )


def _parse_locale(table: Table) -> LocaleEntry:
    locale_id = table.u8(LOCALE_ID, 0)
    if locale_id >= 64:
        raise FormatError(f"locale id {locale_id} does not fit in a locale mask")
    code = table.required(table.string(LOCALE_CODE), "locale code")
    try:
        return LocaleEntry(locale_id=locale_id, code=Locale(code).code)
    except InvalidLocaleError as e:
        raise FormatError(str(e)) from e


def _parse_params(table: Table) -> ChunkingParams:
    raw = table.u8(PARAMS_HASH_TYPE, 0)
    try:
        hash_type = HashType(raw)
    except ValueError:
        raise FormatError(f"unknown chunk hash type: {raw}")
    return ChunkingParams(hash_type=hash_type, max_uncompressed=table.u32(PARAMS_MAX_UNCOMPRESSED, 0))


def _parse_bundle(table: Table) -> Tuple[Bundle, List[Chunk]]:
    bundle_id = table.required(table.u64(BUNDLE_ID), "bundle id")
    chunks = []
    offset = 0
    for chunk_table in table.tables(BUNDLE_CHUNKS):
        compressed_size = chunk_table.required(chunk_table.u32(CHUNK_COMPRESSED_SIZE), "chunk compressed size")
        chunks.append(Chunk(
            chunk_id=chunk_table.required(chunk_table.u64(CHUNK_ID), "chunk id"),
            bundle_id=bundle_id,
            bundle_offset=offset,
            compressed_size=compressed_size,
            uncompressed_size=chunk_table.required(
                chunk_table.u32(CHUNK_UNCOMPRESSED_SIZE), "chunk uncompressed size"
            ),
            compression=Compression.ZSTD,
        ))
        offset += compressed_size
    bundle = Bundle(bundle_id=bundle_id, chunk_ids=tuple(c.chunk_id for c in chunks), size=offset)
    return bundle, chunks


def _parse_directory(table: Table) -> Directory:
    parent_id = table.u64(DIRECTORY_PARENT_ID)
    return Directory(
        directory_id=table.u64(DIRECTORY_ID, 0),
        parent_id=parent_id or None,
        name=table.required(table.string(DIRECTORY_NAME), "directory name"),
    )


def build_directory_paths(directories: List[Directory]) -> Dict[int, str]:
    """
    Resolve the full path of every directory.

    Raises:
        FormatError: On unknown parent ids or parent cycles
    """
    by_id = {d.directory_id: d for d in directories}
    paths: Dict[int, str] = {}

    for directory in directories:
        chain = []
        seen = set()
        current: Optional[Directory] = directory
        while current is not None and current.directory_id not in paths:
            if current.directory_id in seen:
                raise FormatError(f"directory cycle through id {current.directory_id:016X}")
            seen.add(current.directory_id)
            chain.append(current)
            if current.parent_id is None:
                current = None
            elif current.parent_id in by_id:
                current = by_id[current.parent_id]
            else:
                raise FormatError(
                    f"directory {current.directory_id:016X} has unknown parent {current.parent_id:016X}"
                )

        base = paths[current.directory_id] if current is not None else ""
        for entry in reversed(chain):
            base = join_path(base, entry.name)
            paths[entry.directory_id] = base

    return paths


def join_path(parent: str, name: str) -> str:
    if not parent:
        return name
    if not name:
        return parent
    return f"{parent}/{name}"


def _parse_file(
    table: Table,
    dir_paths: Dict[int, str],
    locales: List[LocaleEntry],
    params: List[ChunkingParams],
) -> File:
    file_id = table.required(table.u64(FILE_ID), "file id")
    name = table.required(table.string(FILE_NAME), "file name")
    size = table.required(table.u32(FILE_SIZE), "file size")

    directory_id = table.u64(FILE_DIRECTORY_ID) or None
    if directory_id is None:
        path = name
    elif directory_id in dir_paths:
        path = join_path(dir_paths[directory_id], name)
    else:
        raise FormatError(f"file {file_id:016X} is in unknown directory {directory_id:016X}")

    mask = table.u64(FILE_LOCALES, 0)
    file_locales = frozenset(e.code for e in locales if mask >> e.locale_id & 1)

    params_index = table.u8(FILE_PARAMS_INDEX, 0)
    if params:
        if params_index >= len(params):
            raise FormatError(f"file {path!r} uses unknown chunking parameters #{params_index}")
        hash_type = params[params_index].hash_type
    else:
        hash_type = HashType.NONE

    permissions = table.u8(FILE_PERMISSIONS, 0) or FilePermissions.REGULAR

    return File(
        file_id=file_id,
        path=path,
        name=name,
        directory_id=directory_id,
        size=size,
        chunk_ids=tuple(table.u64_vector(FILE_CHUNKS)),
        locales=file_locales,
        link=table.string(FILE_LINK) or None,
        hash_type=hash_type,
        permissions=permissions,
    )
