"""Chunk decompression, dispatched on the manifest-declared Compression variant."""

from typing import Dict

import zstandard

from common.exceptions import IntegrityError
from rman.types import Compression


class RawCodec:
    """Chunks stored uncompressed."""

    def decompress(self, data: bytes, expected_size: int) -> bytes:
        return bytes(data)


class ZstdCodec:
    """Chunks stored as a single zstd frame."""

    def decompress(self, data: bytes, expected_size: int) -> bytes:
        try:
            return zstandard.ZstdDecompressor().decompress(data, max_output_size=expected_size)
        except zstandard.ZstdError as e:
            raise IntegrityError(f"invalid zstd data: {e}") from e


_CODECS: Dict[Compression, object] = {
    Compression.RAW: RawCodec(),
    Compression.ZSTD: ZstdCodec(),
}


def get_codec(compression: Compression):
    try:
        return _CODECS[compression]
    except KeyError:
        raise ValueError(f"no codec for compression {compression!r}")


def decompress_chunk(data: bytes, compression: Compression, expected_size: int) -> bytes:
    """
    Decompress chunk data and check its length.

    Raises:
        IntegrityError: If data cannot be decoded or has the wrong length
    """
    output = get_codec(compression).decompress(data, expected_size)
    if len(output) != expected_size:
        raise IntegrityError(
            f"decompressed size mismatch: expected {expected_size} bytes, got {len(output)}"
        )
    return output
