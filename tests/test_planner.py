"""Unit tests for range planning."""

from downloader.planner import RangeRequest, plan_ranges
from rman.types import Chunk


def _chunks(bundle_id, sizes, start=0):
    chunks = []
    offset = start
    for i, size in enumerate(sizes):
        chunks.append(Chunk(bundle_id * 0x100 + i, bundle_id, offset, size, size * 2))
        offset += size
    return chunks


class TestPlanRanges:
    """Test coalescing of chunks into range requests."""

    def test_adjacent_chunks_share_one_request(self):
        chunks = _chunks(0xB1, [10, 20, 30])
        requests = plan_ranges(chunks, gap_threshold=0, max_length=1000)

        assert len(requests) == 1
        assert (requests[0].offset, requests[0].length) == (0, 60)
        assert requests[0].chunks == chunks
        assert requests[0].wasted_bytes == 0

    def test_small_gap_is_merged(self):
        a, _, c = _chunks(0xB1, [10, 5, 10])
        requests = plan_ranges([c, a], gap_threshold=5, max_length=1000)

        assert len(requests) == 1
        assert (requests[0].offset, requests[0].length) == (0, 25)
        assert requests[0].chunks == [a, c]
        assert requests[0].wasted_bytes == 5

    def test_large_gap_splits(self):
        a, _, c = _chunks(0xB1, [10, 100, 10])
        requests = plan_ranges([a, c], gap_threshold=50, max_length=1000)

        assert [(r.offset, r.length) for r in requests] == [(0, 10), (110, 10)]

    def test_max_length_splits(self):
        chunks = _chunks(0xB1, [40, 40, 40])
        requests = plan_ranges(chunks, gap_threshold=0, max_length=80)

        assert [(r.offset, r.length) for r in requests] == [(0, 80), (80, 40)]

    def test_oversized_chunk_gets_own_request(self):
        chunks = _chunks(0xB1, [500])
        requests = plan_ranges(chunks, gap_threshold=0, max_length=100)

        assert [(r.offset, r.length) for r in requests] == [(0, 500)]

    def test_bundles_are_never_merged(self):
        first = _chunks(0xB2, [10])
        second = _chunks(0xB1, [10])
        requests = plan_ranges(first + second, gap_threshold=1000, max_length=1000)

        assert [r.bundle_id for r in requests] == [0xB1, 0xB2]

    def test_empty_input(self):
        assert plan_ranges([]) == []

    def test_chunk_slice(self):
        chunks = _chunks(0xB1, [3, 4], start=10)
        request = RangeRequest(0xB1, 10, 7, chunks)
        data = b'aaabbbb'

        assert request.chunk_slice(data, chunks[0]) == b'aaa'
        assert request.chunk_slice(data, chunks[1]) == b'bbbb'
        assert request.end == 17
