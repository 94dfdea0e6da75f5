"""Unit tests for chunk id derivation and checksums."""

import hashlib

import pytest

from rman.hashing import (
    IncrementalChecksumCalculator,
    compute_checksum,
    compute_chunk_id,
    verify_checksum,
    verify_chunk_id,
)
from rman.types import HashType


class TestChunkId:
    """Test chunk id computation for every hash type."""

    def test_sha256_id_is_little_endian_prefix(self):
        data = b'chunk data'
        expected = int.from_bytes(hashlib.sha256(data).digest()[:8], 'little')
        assert compute_chunk_id(data, HashType.SHA256) == expected

    def test_sha512_id_is_little_endian_prefix(self):
        data = b'chunk data'
        expected = int.from_bytes(hashlib.sha512(data).digest()[:8], 'little')
        assert compute_chunk_id(data, HashType.SHA512) == expected

    def test_hkdf_id(self):
        data = b'chunk data'
        key = hashlib.sha256(data).digest()
        block = hashlib.pbkdf2_hmac('sha256', key, b'', 32, 8)
        assert compute_chunk_id(data, HashType.HKDF) == int.from_bytes(block, 'little')

    def test_hash_types_give_distinct_ids(self):
        data = b'x' * 100
        ids = {compute_chunk_id(data, t) for t in (HashType.SHA256, HashType.SHA512, HashType.HKDF)}
        assert len(ids) == 3

    def test_id_fits_64_bits(self):
        assert 0 <= compute_chunk_id(b'', HashType.SHA512) < 2 ** 64

    def test_none_cannot_derive_id(self):
        with pytest.raises(ValueError):
            compute_chunk_id(b'data', HashType.NONE)

    def test_verify_chunk_id(self):
        data = b'payload'
        chunk_id = compute_chunk_id(data, HashType.HKDF)

        assert verify_chunk_id(data, chunk_id, HashType.HKDF)
        assert not verify_chunk_id(data + b'!', chunk_id, HashType.HKDF)

    def test_verify_with_unknown_hash_type_passes(self):
        assert verify_chunk_id(b'anything', 0x1234, HashType.NONE)


class TestChecksum:
    """Test SHA-256 file checksums."""

    def test_compute_checksum(self):
        assert compute_checksum(b'abc') == hashlib.sha256(b'abc').hexdigest()

    def test_verify_checksum_ignores_case(self):
        checksum = compute_checksum(b'abc').upper()
        assert verify_checksum(b'abc', checksum)
        assert not verify_checksum(b'abd', checksum)

    def test_incremental_matches_one_shot(self):
        calculator = IncrementalChecksumCalculator()
        calculator.update(b'hello ')
        calculator.update(b'world')

        assert calculator.finalize() == compute_checksum(b'hello world')

    def test_update_after_finalize_fails(self):
        calculator = IncrementalChecksumCalculator()
        calculator.finalize()
        with pytest.raises(ValueError):
            calculator.update(b'more')

    def test_reset(self):
        calculator = IncrementalChecksumCalculator()
        calculator.update(b'junk')
        calculator.finalize()
        calculator.reset()
        calculator.update(b'abc')

        assert calculator.finalize() == compute_checksum(b'abc')
