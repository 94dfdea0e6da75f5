"""Chunk id derivation and SHA-256 checksum helpers."""

import hashlib

from rman.types import HashType

HKDF_ITERATIONS = 32
CHUNK_ID_SIZE = 8


def compute_chunk_id(data: bytes, hash_type: HashType) -> int:
    """
    Compute the chunk id of uncompressed chunk data.

    Args:
        data: Uncompressed chunk bytes
        hash_type: Algorithm declared by the manifest for the chunk

    Returns:
        64-bit chunk id (first 8 bytes of the digest, little-endian)

    Raises:
        ValueError: If hash_type is NONE (no id can be derived)
    """
    if hash_type == HashType.SHA512:
        digest = hashlib.sha512(data).digest()
    elif hash_type == HashType.SHA256:
        digest = hashlib.sha256(data).digest()
    elif hash_type == HashType.HKDF:
        # Riot's variant: one PBKDF2 block keyed by the SHA-256 of the data, empty salt
        key = hashlib.sha256(data).digest()
        digest = hashlib.pbkdf2_hmac('sha256', key, b'', HKDF_ITERATIONS, CHUNK_ID_SIZE)
    else:
        raise ValueError(f"Cannot derive a chunk id with hash type {hash_type!r}")
    return int.from_bytes(digest[:CHUNK_ID_SIZE], 'little')


def verify_chunk_id(data: bytes, chunk_id: int, hash_type: HashType) -> bool:
    """
    Verify that data hashes to the expected chunk id.

    Returns True when hash_type is NONE, as there is nothing to compare.
    """
    if hash_type == HashType.NONE:
        return True
    return compute_chunk_id(data, hash_type) == chunk_id


def compute_checksum(data: bytes) -> str:
    """
    Compute SHA-256 checksum for given data.

    Args:
        data: Bytes to compute checksum for

    Returns:
        Hexadecimal string representation of SHA-256 hash
    """
    return hashlib.sha256(data).hexdigest()


def verify_checksum(data: bytes, expected: str) -> bool:
    return compute_checksum(data) == expected.lower()


class IncrementalChecksumCalculator:
    """
    Calculate SHA-256 checksum incrementally while a file is assembled.

    Usage:
        calculator = IncrementalChecksumCalculator()
        calculator.update(chunk1)
        calculator.update(chunk2)
        final_checksum = calculator.finalize()
    """

    def __init__(self):
        self._hasher = hashlib.sha256()
        self._finalized = False

    def update(self, data: bytes) -> None:
        if self._finalized:
            raise ValueError("Cannot update after finalization")
        self._hasher.update(data)

    def finalize(self) -> str:
        """
        Finalize checksum calculation and return result.

        Returns:
            Hexadecimal string representation of SHA-256 hash
        """
        self._finalized = True
        return self._hasher.hexdigest()

    def reset(self) -> None:
        self._hasher = hashlib.sha256()
        self._finalized = False
