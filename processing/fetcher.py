# processing/fetcher.py
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List

import aiofiles

from core.config import FETCH_CONCURRENCY
from core.errors import FetchFailed
from core.executor import run_blocking
from storage.chunk_store import BlobStore, SegmentRef

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchResult:
    segment_id: str
    ordinal: int
    path: Path
    chunk_count: int
    size_bytes: int


class ChunkIterator:
    """
    Lazily yields a segment's chunk payloads in index order.

    Chunk existence is discovered by lookup: chunk n is requested only after
    chunk n-1 arrived, and the first missing index ends the iteration.
    """

    def __init__(self, store: BlobStore, segment_id: str) -> None:
        self.store = store
        self.segment_id = segment_id
        self.index = 0
        self._exhausted = False

    def __aiter__(self) -> "ChunkIterator":
        return self

    async def __anext__(self) -> bytes:
        if self._exhausted:
            raise StopAsyncIteration
        data = await run_blocking(self.store.get_chunk, self.segment_id, self.index)
        if data is None:
            self._exhausted = True
            raise StopAsyncIteration
        self.index += 1
        return data


def local_name(ref: SegmentRef, position: int) -> str:
    # position and segment id keep names unique when ordinals or filenames repeat
    return f"{position:05d}_{ref.segment_id}_{Path(ref.filename).name}"


async def fetch_segment(store: BlobStore, ref: SegmentRef, dest: Path) -> FetchResult:
    """
    Drain one segment's chunks into `dest`.
    Any store error aborts this segment only; the partial file is removed.
    """
    chunks = ChunkIterator(store, ref.segment_id)
    size = 0
    try:
        async with aiofiles.open(dest, "wb") as out:
            async for data in chunks:
                await out.write(data)
                size += len(data)
        if chunks.index != ref.chunk_count or size != ref.size_bytes:
            raise IOError(
                f"segment incomplete: got {chunks.index}/{ref.chunk_count} chunks, "
                f"{size}/{ref.size_bytes} bytes"
            )
    except asyncio.CancelledError:
        dest.unlink(missing_ok=True)
        raise
    except Exception as e:
        dest.unlink(missing_ok=True)
        logger.error("Fetch of segment %s failed at chunk %d: %s", ref.segment_id, chunks.index, e)
        raise FetchFailed(ref.segment_id, e) from e

    logger.debug("Fetched segment %s: %d chunks, %d bytes", ref.segment_id, chunks.index, size)
    return FetchResult(
        segment_id=ref.segment_id,
        ordinal=ref.ordinal,
        path=dest,
        chunk_count=chunks.index,
        size_bytes=size,
    )


async def fetch_segments(
    store: BlobStore,
    refs: List[SegmentRef],
    workspace: Path,
    concurrency: int = FETCH_CONCURRENCY,
) -> List[FetchResult]:
    """
    Fetch all segments into `workspace`, at most `concurrency` at a time.
    Results come back in the order of `refs`. The first failure cancels the
    fetches still running and is re-raised.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def bounded(position: int, ref: SegmentRef) -> FetchResult:
        async with semaphore:
            return await fetch_segment(store, ref, workspace / local_name(ref, position))

    tasks = [asyncio.ensure_future(bounded(i, ref)) for i, ref in enumerate(refs)]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        pending = [t for t in tasks if not t.done()]
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


async def stream_segment(store: BlobStore, segment_id: str) -> AsyncIterator[bytes]:
    """Relay one stored segment's raw bytes, chunk by chunk."""
    async for data in ChunkIterator(store, segment_id):
        yield data
