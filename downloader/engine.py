"""Materialization of manifest files from bundles, a chunk store and existing files."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from chunkstore.composition_index import CompositionEntry, CompositionIndex
from chunkstore.guarded_file import GuardedFile
from common.constants import TEMP_FILE_SUFFIX
from common.exceptions import (
    ChunkNotFoundError,
    IntegrityError,
    LocalIOError,
    NetworkError,
    RmanError,
)
from downloader.cdn_client import BundleFetcher, is_retryable
from downloader.compression import decompress_chunk
from downloader.config import MaterializeOptions
from downloader.coordinator import ChunkFetchCoordinator
from downloader.planner import RangeRequest, plan_ranges
from downloader.report import ErrorKind, MaterializeReport, error_kind_for
from rman.hashing import IncrementalChecksumCalculator, verify_chunk_id
from rman.ids import format_id
from rman.manifest import Manifest
from rman.types import Chunk, File, HashType

logger = logging.getLogger(__name__)

EXECUTABLE_MODE = 0o755


def resolve_target_path(destination_root: Path, path: str) -> Path:
    """
    Map a manifest path to a location under the destination root.

    Raises:
        LocalIOError: If the path is empty, absolute or escapes the root
    """
    raw = (path or "").strip().replace("\\", "/")
    if not raw or raw.startswith("/"):
        raise LocalIOError(f"Invalid path in manifest: {path!r}")
    parts = [part for part in raw.split("/") if part]
    if not parts or any(part in (".", "..") for part in parts):
        raise LocalIOError(f"Invalid path in manifest: {path!r}")

    # The last component may be a symlink written by a previous run
    parent = destination_root.joinpath(*parts[:-1]).resolve()
    if not parent.is_relative_to(destination_root.resolve()):
        raise LocalIOError(f"Path escapes destination root: {path!r}")
    return parent / parts[-1]


class Materializer:
    """
    Writes requested manifest files under a destination root.

    Chunks come from the store when cached, from an older copy of the file
    when patching, and otherwise from coalesced bundle range fetches. Each
    chunk is fetched at most once per run, however many files need it.
    """

    def __init__(
        self,
        manifest: Manifest,
        store,
        fetcher: BundleFetcher,
        options: Optional[MaterializeOptions] = None,
    ):
        self.manifest = manifest
        self.store = store
        self.fetcher = fetcher
        self.options = options or MaterializeOptions()
        self.coordinator = ChunkFetchCoordinator()
        self._semaphore = asyncio.Semaphore(max(1, self.options.concurrency))
        self._assembly = asyncio.Semaphore(max(1, self.options.assembly_concurrency))
        self._hash_types: Dict[int, HashType] = {}
        self._fetched: Set[int] = set()
        self._skipped: Set[int] = set()
        self._chunk_tasks: List[asyncio.Task] = []
        self.report: Optional[MaterializeReport] = None

    def _resolve_files(self, requested_files: Iterable[Union[File, str]]) -> List[File]:
        files: List[File] = []
        seen: Set[str] = set()
        for item in requested_files:
            if isinstance(item, str):
                file = self.manifest.get_file(item)
                if file is None:
                    raise ValueError(f"File not in manifest: {item!r}")
            else:
                file = item
            if file.path not in seen:
                seen.add(file.path)
                files.append(file)
        return files

    async def run(
        self,
        requested_files: Iterable[Union[File, str]],
        destination_root: Union[str, Path],
    ) -> MaterializeReport:
        """
        Materialize files and report per-file outcomes.

        Per-file failures are collected in the report; only misuse (unknown
        paths) raises.
        """
        files = self._resolve_files(requested_files)
        root = Path(destination_root)
        report = MaterializeReport(
            manifest_id=format_id(self.manifest.manifest_id),
            files_requested=len(files),
        )
        self.report = report

        for file in files:
            if file.hash_type != HashType.NONE:
                for chunk_id in file.chunk_ids:
                    self._hash_types.setdefault(chunk_id, file.hash_type)

        index = CompositionIndex.for_destination(root)
        await asyncio.to_thread(index.load_from_disk)

        logger.info(
            f"Materializing {len(files)} files of manifest {report.manifest_id} into {root} "
            f"[patch={self.options.patch}, concurrency={self.options.concurrency}]"
        )

        targets: List[Tuple[File, Path]] = []
        for file in files:
            try:
                target = resolve_target_path(root, file.path)
            except LocalIOError as e:
                report.add_error(file.path, ErrorKind.IO, str(e))
                continue
            if self.options.patch and self._is_unchanged(file, target, index.get(file.path)):
                report.files_unchanged.append(file.path)
                self._skipped.update(file.chunk_ids)
                continue
            targets.append((file, target))

        if self.options.patch:
            await self._reuse_existing_chunks(targets, index)

        missing = await asyncio.to_thread(self._partition_chunks, targets)
        for request in plan_ranges(
            missing,
            gap_threshold=self.options.range_gap_threshold,
            max_length=self.options.max_range_length,
        ):
            for chunk in request.chunks:
                self.coordinator.claim_or_join(chunk.chunk_id)
            self._chunk_tasks.append(asyncio.create_task(self._fetch_range(request)))

        file_tasks = {
            asyncio.create_task(self._run_file(file, target, index)): file
            for file, target in targets
        }
        cancel_watch = None
        if self.options.cancel_event is not None:
            cancel_watch = asyncio.create_task(self.options.cancel_event.wait())

        try:
            pending = set(file_tasks)
            while pending:
                waiting = set(pending)
                if cancel_watch is not None:
                    waiting.add(cancel_watch)
                done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                for task in done:
                    if task in file_tasks and not task.cancelled() and task.exception() is not None:
                        raise task.exception()
                if cancel_watch is not None and cancel_watch in done:
                    report.cancelled = True
                    logger.warning(f"Materialization of manifest {report.manifest_id} cancelled")
                    break
            if not report.cancelled:
                await asyncio.gather(*self._chunk_tasks, return_exceptions=True)
        finally:
            if cancel_watch is not None:
                cancel_watch.cancel()
            await self._shutdown(list(file_tasks) + self._chunk_tasks)
            self.coordinator.cancel_pending()
            try:
                await asyncio.to_thread(index.save_to_disk)
            except LocalIOError as e:
                logger.error(f"Cannot save composition index: {e}")

        if report.cancelled:
            finished = set(report.files_written) | set(report.failed_paths())
            for file, _ in targets:
                if file.path not in finished:
                    report.add_error(file.path, ErrorKind.CANCELLED, "cancelled before completion")

        report.bytes_skipped = sum(
            self.manifest.chunks[chunk_id].compressed_size
            for chunk_id in self._skipped - self._fetched
            if chunk_id in self.manifest.chunks
        )
        logger.info(
            f"Materialized manifest {report.manifest_id}: {len(report.files_written)} written, "
            f"{len(report.files_unchanged)} unchanged, {len(report.errors)} failed, "
            f"{report.bytes_downloaded} bytes downloaded in {report.fetch_count} fetches"
        )
        return report

    async def _shutdown(self, tasks: List[asyncio.Task]) -> None:
        """Cancel unfinished tasks and wait for their cleanup to run."""
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _is_unchanged(self, file: File, target: Path, entry: Optional[CompositionEntry]) -> bool:
        if file.is_link:
            return target.is_symlink() and os.readlink(target) == file.link
        if entry is None or entry.chunk_ids() != tuple(file.chunk_ids):
            return False
        try:
            return (
                target.is_file() and not target.is_symlink()
                and target.stat().st_size == entry.size == file.size
            )
        except OSError:
            return False

    async def _reuse_existing_chunks(
        self,
        targets: List[Tuple[File, Path]],
        index: CompositionIndex,
    ) -> None:
        """Seed the store with chunks already present in older copies of the targets."""
        for file, target in targets:
            if file.is_link:
                continue
            entry = index.get(file.path)
            if entry is None or not target.is_file() or target.is_symlink():
                continue
            try:
                reused = await asyncio.to_thread(self._copy_known_chunks, file, target, entry)
            except (OSError, RmanError) as e:
                logger.warning(f"Cannot reuse chunks of existing {target}: {e}")
                continue
            self.report.chunks_reused += len(reused)
            self._skipped.update(reused)

    def _copy_known_chunks(self, file: File, target: Path, entry: CompositionEntry) -> List[int]:
        if target.stat().st_size != entry.size:
            return []
        offsets = entry.chunk_offsets()
        reused: List[int] = []
        with open(target, 'rb') as f:
            for chunk_id in dict.fromkeys(file.chunk_ids):
                location = offsets.get(chunk_id)
                chunk = self.manifest.chunks[chunk_id]
                if location is None or location[1] != chunk.uncompressed_size:
                    continue
                if self.store.size(chunk_id) == chunk.uncompressed_size:
                    continue
                f.seek(location[0])
                data = f.read(location[1])
                if len(data) != chunk.uncompressed_size:
                    continue
                hash_type = self._hash_types.get(chunk_id, HashType.NONE)
                if not verify_chunk_id(data, chunk_id, hash_type):
                    logger.debug(f"Existing copy of chunk {format_id(chunk_id)} in {target} is stale")
                    continue
                self.store.discard(chunk_id)
                self.store.write(chunk_id, data)
                reused.append(chunk_id)
        if reused:
            logger.debug(f"Reused {len(reused)} chunks from existing {target}")
        return reused

    def _partition_chunks(self, targets: List[Tuple[File, Path]]) -> List[Chunk]:
        """Split needed chunks into cached ones and ones to fetch."""
        needed = self.manifest.required_chunks(file for file, _ in targets if not file.is_link)
        missing: List[Chunk] = []
        for chunk_id, chunk in needed.items():
            size = self.store.size(chunk_id)
            if size == chunk.uncompressed_size and not self._cached_copy_is_corrupt(chunk_id):
                self.report.chunks_cached += 1
                self._skipped.add(chunk_id)
                continue
            if size is not None:
                logger.warning(f"Cached chunk {format_id(chunk_id)} is invalid; fetching again")
                self.store.discard(chunk_id)
            missing.append(chunk)
        return missing

    def _cached_copy_is_corrupt(self, chunk_id: int) -> bool:
        hash_type = self._hash_types.get(chunk_id, HashType.NONE)
        if not self.options.verify_cached_chunks or hash_type == HashType.NONE:
            return False
        try:
            return not self.store.verify(chunk_id, hash_type)
        except ChunkNotFoundError:
            return True

    def _evict_corrupt_chunks(self, file: File) -> List[int]:
        """Discard cached chunks of a file whose content no longer matches their id."""
        evicted = []
        for chunk_id in dict.fromkeys(file.chunk_ids):
            hash_type = self._hash_types.get(chunk_id, HashType.NONE)
            if hash_type == HashType.NONE or not self.store.has(chunk_id):
                continue
            try:
                corrupt = not self.store.verify(chunk_id, hash_type)
            except ChunkNotFoundError:
                continue
            if corrupt:
                logger.warning(f"Discarding corrupt cached chunk {format_id(chunk_id)}")
                self.store.discard(chunk_id)
                evicted.append(chunk_id)
        return evicted

    async def _fetch_with_retry(self, bundle_id: int, offset: int, length: int) -> bytes:
        """
        Fetch a bundle range, retrying transient failures with exponential backoff.

        Raises:
            NetworkError: When retries are exhausted or the failure is permanent
        """
        timeout = self.options.fetch_timeout
        attempt = 0
        while True:
            self.report.fetch_count += 1
            try:
                if timeout:
                    data = await asyncio.wait_for(
                        self.fetcher.fetch_range(bundle_id, offset, length), timeout
                    )
                else:
                    data = await self.fetcher.fetch_range(bundle_id, offset, length)
            except asyncio.TimeoutError:
                error = NetworkError(
                    f"Fetch of bundle {format_id(bundle_id)} timed out after {timeout}s"
                )
            except NetworkError as e:
                error = e
            else:
                if len(data) == length:
                    self.report.bytes_downloaded += len(data)
                    return data
                error = NetworkError(
                    f"Short read from bundle {format_id(bundle_id)}: expected {length} bytes, got {len(data)}"
                )

            if not is_retryable(error) or attempt >= self.options.max_retries:
                logger.error(
                    f"Fetch failed: bundle {format_id(bundle_id)} range {offset}+{length} "
                    f"after {attempt + 1} attempts: {error}"
                )
                raise error
            delay = self.options.retry_backoff_base * (2 ** attempt)
            logger.warning(
                f"Network error (attempt {attempt + 1}/{self.options.max_retries + 1}): "
                f"bundle {format_id(bundle_id)} error={error}, retrying in {delay}s"
            )
            await asyncio.sleep(delay)
            attempt += 1

    def _decode_chunk(self, chunk: Chunk, raw: bytes) -> bytes:
        data = decompress_chunk(raw, chunk.compression, chunk.uncompressed_size)
        if self.options.verify_chunks:
            hash_type = self._hash_types.get(chunk.chunk_id, HashType.NONE)
            if not verify_chunk_id(data, chunk.chunk_id, hash_type):
                raise IntegrityError(f"chunk {format_id(chunk.chunk_id)} does not match its id")
        return data

    async def _fetch_range(self, request: RangeRequest) -> None:
        """Fetch one range and store its chunks, resolving their futures."""
        chunk_ids = [chunk.chunk_id for chunk in request.chunks]
        try:
            async with self._semaphore:
                try:
                    data = await self._fetch_with_retry(request.bundle_id, request.offset, request.length)
                except NetworkError as e:
                    self.coordinator.fail_pending(chunk_ids, e)
                    return
                for chunk in request.chunks:
                    await self._store_chunk(chunk, request.chunk_slice(data, chunk))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.coordinator.fail_pending(chunk_ids, e)

    async def _store_chunk(self, chunk: Chunk, raw: bytes) -> None:
        chunk_id = chunk.chunk_id
        attempts = 0
        while True:
            try:
                data = await asyncio.to_thread(self._decode_chunk, chunk, raw)
                break
            except IntegrityError as e:
                if attempts >= self.options.integrity_retries:
                    logger.error(f"Chunk {format_id(chunk_id)} failed verification: {e}")
                    self.coordinator.fail(chunk_id, e)
                    return
                attempts += 1
                logger.warning(
                    f"Chunk {format_id(chunk_id)} failed verification ({e}), "
                    f"fetching it again ({attempts}/{self.options.integrity_retries})"
                )
                try:
                    raw = await self._fetch_with_retry(
                        chunk.bundle_id, chunk.bundle_offset, chunk.compressed_size
                    )
                except NetworkError as fetch_error:
                    self.coordinator.fail(chunk_id, fetch_error)
                    return

        try:
            await asyncio.to_thread(self.store.write, chunk_id, data)
        except RmanError as e:
            self.coordinator.fail(chunk_id, e)
            return
        self._fetched.add(chunk_id)
        self.report.chunks_fetched += 1
        self.coordinator.resolve(chunk_id)

    async def _ensure_chunk(self, chunk: Chunk) -> None:
        """Wait until a chunk is in the store, fetching it alone if nobody is."""
        future, claimed = self.coordinator.claim_or_join(chunk.chunk_id)
        if claimed:
            request = RangeRequest(
                bundle_id=chunk.bundle_id,
                offset=chunk.bundle_offset,
                length=chunk.compressed_size,
                chunks=[chunk],
            )
            self._chunk_tasks.append(asyncio.create_task(self._fetch_range(request)))
        await asyncio.shield(future)

    async def _read_chunk(self, chunk: Chunk) -> bytes:
        future = self.coordinator.get(chunk.chunk_id)
        if future is not None:
            await asyncio.shield(future)
        try:
            return await asyncio.to_thread(self.store.read, chunk.chunk_id)
        except ChunkNotFoundError:
            if future is not None:
                raise
        # Evicted between planning and assembly
        await self._ensure_chunk(chunk)
        return await asyncio.to_thread(self.store.read, chunk.chunk_id)

    async def _wait_for_chunks(self, file: File) -> None:
        """Wait for the in-flight chunks of a file before opening its temporary."""
        for chunk_id in dict.fromkeys(file.chunk_ids):
            future = self.coordinator.get(chunk_id)
            if future is not None:
                await asyncio.shield(future)

    async def _run_file(self, file: File, target: Path, index: CompositionIndex) -> None:
        try:
            if not file.is_link:
                await self._wait_for_chunks(file)
            async with self._assembly:
                if file.is_link:
                    await asyncio.to_thread(self._write_link, file, target)
                else:
                    await self._assemble_file(file, target)
        except asyncio.CancelledError:
            raise
        except RmanError as e:
            logger.error(f"Failed to materialize {file.path}: {e}")
            self.report.add_error(file.path, error_kind_for(e), str(e))
            return
        except OSError as e:
            logger.error(f"Failed to materialize {file.path}: {e}")
            self.report.add_error(file.path, ErrorKind.IO, f"{target}: {e}")
            return

        if file.is_link:
            index.remove(file.path)
        else:
            chunks = self.manifest.file_chunks(file)
            index.record(file.path, self.manifest.manifest_id, [
                (chunk.chunk_id, chunk.uncompressed_size) for chunk in chunks
            ])
        self.report.files_written.append(file.path)
        self.report.bytes_written += file.size
        logger.debug(f"Wrote {file.path} ({file.size} bytes)")

    async def _assemble_file(self, file: File, target: Path) -> None:
        """
        Write a file by concatenating its chunks through a temporary sibling.

        Raises:
            IntegrityError: If the assembled size or content hash is wrong
            RmanError: If one of its chunks could not be obtained
        """
        if target.is_dir() and not target.is_symlink():
            raise LocalIOError(f"{target} is a directory")
        calculator = IncrementalChecksumCalculator() if file.content_hash else None
        written = 0
        with GuardedFile(target) as gfile:
            for chunk in self.manifest.file_chunks(file):
                data = await self._read_chunk(chunk)
                if len(data) != chunk.uncompressed_size:
                    raise IntegrityError(
                        f"cached chunk {format_id(chunk.chunk_id)} has {len(data)} bytes, "
                        f"expected {chunk.uncompressed_size}"
                    )
                gfile.write(data)
                if calculator is not None:
                    calculator.update(data)
                written += len(data)

            if written != file.size:
                raise IntegrityError(f"assembled {written} bytes, expected {file.size}")
            if calculator is not None:
                checksum = calculator.finalize()
                if checksum != file.content_hash.lower():
                    evicted = await asyncio.to_thread(self._evict_corrupt_chunks, file)
                    raise IntegrityError(
                        f"content hash mismatch: expected {file.content_hash}, got {checksum}"
                        + (f"; discarded {len(evicted)} corrupt cached chunks" if evicted else "")
                    )
            gfile.persist(mode=EXECUTABLE_MODE if file.is_executable else None)

    def _write_link(self, file: File, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(target.name + TEMP_FILE_SUFFIX)
        if tmp_path.is_symlink() or tmp_path.exists():
            tmp_path.unlink()
        if target.is_dir() and not target.is_symlink():
            raise LocalIOError(f"{target} is a directory")
        os.symlink(file.link, tmp_path)
        os.replace(tmp_path, target)


async def materialize(
    manifest: Manifest,
    requested_files: Iterable[Union[File, str]],
    destination_root: Union[str, Path],
    store,
    fetcher: BundleFetcher,
    options: Optional[MaterializeOptions] = None,
) -> MaterializeReport:
    """
    Materialize files of a manifest under `destination_root`.

    Args:
        manifest: Decoded manifest
        requested_files: Files (or manifest paths) to write
        destination_root: Directory receiving the files
        store: Chunk store used as cache (ChunkStore or MemoryChunkStore)
        fetcher: Source of bundle byte ranges, usually a CdnClient
        options: Tuning, retries, patch mode and cancellation

    Returns:
        Report listing written, unchanged and failed files
    """
    materializer = Materializer(manifest, store, fetcher, options)
    return await materializer.run(requested_files, destination_root)
