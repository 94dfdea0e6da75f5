"""Grouping of missing chunks into bundle range requests."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from common.constants import DEFAULT_MAX_RANGE_LENGTH, DEFAULT_RANGE_GAP_THRESHOLD
from rman.types import Chunk


@dataclass
class RangeRequest:
    """
    One byte-range GET on a bundle, covering one or more needed chunks.
    """
    bundle_id: int
    offset: int
    length: int
    chunks: List[Chunk] = field(default_factory=list)

    @property
    def end(self) -> int:
        return self.offset + self.length

    @property
    def wasted_bytes(self) -> int:
        """Bytes fetched for chunks that were not requested."""
        return self.length - sum(c.compressed_size for c in self.chunks)

    def chunk_slice(self, data: bytes, chunk: Chunk) -> bytes:
        start = chunk.bundle_offset - self.offset
        return data[start:start + chunk.compressed_size]


def plan_ranges(
    chunks: Iterable[Chunk],
    gap_threshold: int = DEFAULT_RANGE_GAP_THRESHOLD,
    max_length: int = DEFAULT_MAX_RANGE_LENGTH,
) -> List[RangeRequest]:
    """
    Coalesce chunks into range requests, bundle per bundle.

    Two chunks of the same bundle share a request when the gap between them
    is at most `gap_threshold` bytes and the merged range stays within
    `max_length`. A single chunk larger than `max_length` gets its own request.

    Args:
        chunks: Distinct chunks to fetch

    Returns:
        Requests ordered by bundle id, then offset
    """
    by_bundle: Dict[int, List[Chunk]] = defaultdict(list)
    for chunk in chunks:
        by_bundle[chunk.bundle_id].append(chunk)

    requests: List[RangeRequest] = []
    for bundle_id in sorted(by_bundle):
        current = None
        for chunk in sorted(by_bundle[bundle_id], key=lambda c: c.bundle_offset):
            if current is not None:
                gap = chunk.bundle_offset - current.end
                merged_length = chunk.bundle_end - current.offset
                if 0 <= gap <= gap_threshold and merged_length <= max_length:
                    current.chunks.append(chunk)
                    current.length = merged_length
                    continue
            current = RangeRequest(
                bundle_id=bundle_id,
                offset=chunk.bundle_offset,
                length=chunk.compressed_size,
                chunks=[chunk],
            )
            requests.append(current)
    return requests
