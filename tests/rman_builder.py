"""Builds RMAN manifests for tests.

Tables are written children first, so references to them are negative
relative offsets; only the root offset at the start of the body points
forward.
"""

import struct
from typing import Dict, List, Optional, Sequence, Tuple

import zstandard

from rman.hashing import compute_chunk_id
from rman.types import HashType

_FIELD_FORMATS = {'u8': '<B', 'u16': '<H', 'u32': '<I', 'u64': '<Q', 'ref': '<i'}


class _BodyWriter:
    def __init__(self):
        self.buf = bytearray(4)

    def string(self, text: str) -> int:
        raw = text.encode('utf-8')
        pos = len(self.buf)
        self.buf += struct.pack('<I', len(raw)) + raw
        return pos

    def u64_vector(self, values: Sequence[int]) -> int:
        pos = len(self.buf)
        self.buf += struct.pack(f'<I{len(values)}Q', len(values), *values)
        return pos

    def table_vector(self, table_positions: Sequence[int]) -> int:
        pos = len(self.buf)
        self.buf += struct.pack('<I', len(table_positions))
        for table_pos in table_positions:
            slot = len(self.buf)
            self.buf += struct.pack('<i', table_pos - slot)
        return pos

    def table(self, fields: Sequence[Tuple[int, str, int]]) -> int:
        """Write a table; `fields` are `(index, kind, value)`, refs given as absolute positions."""
        fields = sorted(fields)
        offsets = {}
        size = 4
        for index, kind, _ in fields:
            offsets[index] = size
            size += struct.calcsize(_FIELD_FORMATS[kind])
        slots = max(offsets) + 1 if offsets else 0

        vtable_pos = len(self.buf)
        self.buf += struct.pack('<HH', 4 + 2 * slots, size)
        for index in range(slots):
            self.buf += struct.pack('<H', offsets.get(index, 0))

        table_pos = len(self.buf)
        self.buf += struct.pack('<i', table_pos - vtable_pos)
        for index, kind, value in fields:
            if kind == 'ref':
                value = value - len(self.buf)
            self.buf += struct.pack(_FIELD_FORMATS[kind], value)
        return table_pos

    def finish(self, root_pos: int) -> bytes:
        struct.pack_into('<I', self.buf, 0, root_pos)
        return bytes(self.buf)


class RmanBuilder:
    """
    Assemble a manifest from bundles, files, directories, locales and params.

    `bundle_data` keeps the bytes of each bundle, to serve range fetches.
    """

    def __init__(self, manifest_id: int = 0x0123456789ABCDEF):
        self.manifest_id = manifest_id
        self.bundles: List[Tuple[int, List[Tuple[int, int, int]]]] = []
        self.bundle_data: Dict[int, bytes] = {}
        self.chunk_sizes: Dict[int, int] = {}
        self.files: List[dict] = []
        self.directories: List[Tuple[int, int, str]] = []
        self.locales: List[Tuple[int, str]] = []
        self.params: List[Tuple[int, int]] = []

    def add_bundle(self, bundle_id: int, chunks: Sequence[Tuple[int, bytes, int]]) -> None:
        """
        Add a bundle from `(chunk_id, compressed_bytes, uncompressed_size)` entries.
        """
        self.bundles.append((bundle_id, [(cid, len(data), size) for cid, data, size in chunks]))
        self.bundle_data[bundle_id] = b''.join(data for _, data, _ in chunks)
        for chunk_id, _, size in chunks:
            self.chunk_sizes.setdefault(chunk_id, size)

    def add_payloads(
        self,
        bundle_id: int,
        payloads: Sequence[bytes],
        hash_type: HashType = HashType.SHA256,
    ) -> List[int]:
        """Compress payloads into a new bundle; return their chunk ids."""
        compressor = zstandard.ZstdCompressor()
        chunk_ids = [compute_chunk_id(payload, hash_type) for payload in payloads]
        self.add_bundle(bundle_id, [
            (chunk_id, compressor.compress(payload), len(payload))
            for chunk_id, payload in zip(chunk_ids, payloads)
        ])
        return chunk_ids

    def add_params(self, hash_type: HashType, max_uncompressed: int = 0) -> int:
        self.params.append((int(hash_type), max_uncompressed))
        return len(self.params) - 1

    def add_locale(self, locale_id: int, code: str) -> None:
        self.locales.append((locale_id, code))

    def add_directory(self, directory_id: int, parent_id: int, name: str) -> None:
        self.directories.append((directory_id, parent_id, name))

    def add_file(
        self,
        file_id: int,
        name: str,
        chunk_ids: Sequence[int] = (),
        size: Optional[int] = None,
        directory_id: int = 0,
        locale_mask: int = 0,
        link: Optional[str] = None,
        params_index: Optional[int] = None,
        permissions: Optional[int] = None,
    ) -> None:
        if size is None:
            size = sum(self.chunk_sizes.get(chunk_id, 0) for chunk_id in chunk_ids)
        self.files.append(dict(
            file_id=file_id, name=name, chunk_ids=list(chunk_ids), size=size,
            directory_id=directory_id, locale_mask=locale_mask, link=link,
            params_index=params_index, permissions=permissions,
        ))

    def build_body(self) -> bytes:
        w = _BodyWriter()

        bundle_tables = []
        for bundle_id, chunks in self.bundles:
            chunk_tables = [
                w.table([(0, 'u64', cid), (1, 'u32', compressed), (2, 'u32', size)])
                for cid, compressed, size in chunks
            ]
            chunks_vec = w.table_vector(chunk_tables)
            bundle_tables.append(w.table([(0, 'u64', bundle_id), (1, 'ref', chunks_vec)]))

        locale_tables = []
        for locale_id, code in self.locales:
            code_pos = w.string(code)
            locale_tables.append(w.table([(0, 'u8', locale_id), (1, 'ref', code_pos)]))

        file_tables = []
        for f in self.files:
            name_pos = w.string(f['name'])
            chunks_pos = w.u64_vector(f['chunk_ids'])
            fields = [
                (0, 'u64', f['file_id']),
                (2, 'u32', f['size']),
                (3, 'ref', name_pos),
                (7, 'ref', chunks_pos),
            ]
            if f['directory_id']:
                fields.append((1, 'u64', f['directory_id']))
            if f['locale_mask']:
                fields.append((4, 'u64', f['locale_mask']))
            if f['link'] is not None:
                fields.append((9, 'ref', w.string(f['link'])))
            if f['params_index'] is not None:
                fields.append((11, 'u8', f['params_index']))
            if f['permissions'] is not None:
                fields.append((12, 'u8', f['permissions']))
            file_tables.append(w.table(fields))

        directory_tables = []
        for directory_id, parent_id, name in self.directories:
            name_pos = w.string(name)
            fields = [(0, 'u64', directory_id), (2, 'ref', name_pos)]
            if parent_id:
                fields.append((1, 'u64', parent_id))
            directory_tables.append(w.table(fields))

        params_tables = [
            w.table([(1, 'u8', hash_type), (4, 'u32', max_uncompressed)])
            for hash_type, max_uncompressed in self.params
        ]

        root = w.table([
            (0, 'ref', w.table_vector(bundle_tables)),
            (1, 'ref', w.table_vector(locale_tables)),
            (2, 'ref', w.table_vector(file_tables)),
            (3, 'ref', w.table_vector(directory_tables)),
            (5, 'ref', w.table_vector(params_tables)),
        ])
        return w.finish(root)

    def build(
        self,
        body: Optional[bytes] = None,
        version: Tuple[int, int] = (2, 0),
        flags: int = 1 << 9,
        padding: int = 0,
    ) -> bytes:
        """Serialize the manifest: header, optional padding, compressed body."""
        if body is None:
            body = self.build_body()
        compressed = zstandard.ZstdCompressor().compress(body)
        header = b'RMAN' + bytes(version) + struct.pack(
            '<HIIQI', flags, 28 + padding, len(compressed), self.manifest_id, len(body)
        )
        return header + b'\0' * padding + compressed


def handmade_zstd_frame(raw_part: bytes, rle_byte: int, rle_count: int) -> bytes:
    """
    A single-segment zstd frame: one raw block then one last RLE block.

    Its exact size is `10 + len(raw_part)` bytes, for a content size of
    `len(raw_part) + rle_count` (below 256).
    """
    content_size = len(raw_part) + rle_count
    header = b'\x28\xb5\x2f\xfd' + bytes([0x20, content_size])
    raw_block = (len(raw_part) << 3).to_bytes(3, 'little') + raw_part
    rle_block = (1 | (1 << 1) | (rle_count << 3)).to_bytes(3, 'little') + bytes([rle_byte])
    return header + raw_block + rle_block
