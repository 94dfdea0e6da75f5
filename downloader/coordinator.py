"""In-flight chunk tracking: each chunk id is fetched at most once per run."""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Tuple

from rman.ids import format_id

logger = logging.getLogger(__name__)


class ChunkFetchCoordinator:
    """
    Map of chunk id to the future resolved once the chunk is in the store.

    `claim_or_join` runs without awaiting, which makes it atomic on the
    event loop: the first caller claims the fetch, later callers join it.
    """

    def __init__(self):
        self._inflight: Dict[int, asyncio.Future] = {}

    def claim_or_join(self, chunk_id: int) -> Tuple[asyncio.Future, bool]:
        """
        Returns:
            `(future, claimed)`; `claimed` is True when the caller must fetch
        """
        future = self._inflight.get(chunk_id)
        if future is not None:
            return future, False
        future = asyncio.get_running_loop().create_future()
        self._inflight[chunk_id] = future
        return future, True

    def get(self, chunk_id: int) -> Optional[asyncio.Future]:
        return self._inflight.get(chunk_id)

    def resolve(self, chunk_id: int) -> None:
        future = self._inflight[chunk_id]
        if not future.done():
            future.set_result(chunk_id)

    def fail(self, chunk_id: int, error: BaseException) -> None:
        future = self._inflight[chunk_id]
        if not future.done():
            logger.debug(f"Chunk {format_id(chunk_id)} failed: {error}")
            future.set_exception(error)

    def fail_pending(self, chunk_ids: Iterable[int], error: BaseException) -> None:
        for chunk_id in chunk_ids:
            self.fail(chunk_id, error)

    def cancel_pending(self) -> None:
        """Cancel unresolved futures and mark failures as retrieved."""
        for future in self._inflight.values():
            if not future.done():
                future.cancel()
            elif not future.cancelled():
                future.exception()

    def __len__(self) -> int:
        return len(self._inflight)
