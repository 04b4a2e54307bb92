import logging
import mimetypes
import os
import re
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import aiofiles
import cv2
from fastapi import UploadFile

from core import config
from core.errors import NotFound, ValidationError
from core.executor import run_blocking
from processing.resolver import resolve_segments
from processing.segmenter import split_video
from services.stream_session import StreamSession
from storage.chunk_store import ChunkStore, SegmentRef
from storage.models import VideoEntry

logger = logging.getLogger(__name__)

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def ensure_dirs() -> None:
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)
    config.SCRATCH_DIR.mkdir(parents=True, exist_ok=True)


def guess_mime(path: str, fallback: str = "application/octet-stream") -> str:
    m, _ = mimetypes.guess_type(path)
    return m or fallback


def validate_video_id(value: Optional[str]) -> str:
    if value is None or not value.strip():
        raise ValidationError("Video id must be provided")
    value = value.strip()
    if not _ID_PATTERN.match(value):
        raise ValidationError(f"Malformed video id: {value!r}")
    return value


def get_video_metadata(path: str) -> Tuple[float, int, int]:
    fps = 0.0
    width = 0
    height = 0
    try:
        cap = cv2.VideoCapture(path)
        if cap.isOpened():
            fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
        cap.release()
    except cv2.error as e:
        logger.warning("Could not read video metadata for %s: %s", path, e)
    return fps, width, height


def _put_file(store: ChunkStore, video_id: str, ordinal: int, path: Path) -> SegmentRef:
    with open(path, "rb") as f:
        return store.put_object(video_id, ordinal, path.name, f)


async def store_segments(
    store: ChunkStore,
    segment_paths: Sequence[Path],
    *,
    filename: Optional[str] = None,
    content_type: str = "video/mp4",
    size: int = 0,
    fps: float = 0.0,
    width: int = 0,
    height: int = 0,
) -> str:
    """
    Store pre-cut segments under a new video id, ordinal = position in
    `segment_paths`. On failure every segment already written is removed.
    """
    if not segment_paths:
        raise ValueError("No segments to store")

    video_id = uuid.uuid4().hex
    try:
        for ordinal, path in enumerate(segment_paths):
            await run_blocking(_put_file, store, video_id, ordinal, Path(path))

        await run_blocking(
            store.put_video,
            VideoEntry(
                video_id=video_id,
                filename=filename or Path(segment_paths[0]).name,
                content_type=content_type,
                size=size or sum(Path(p).stat().st_size for p in segment_paths),
                fps=fps,
                width=width,
                height=height,
                segment_count=len(segment_paths),
            ),
        )
    except Exception:
        logger.exception("Storing segments for %s failed; rolling back", video_id)
        await run_blocking(store.delete_video, video_id)
        raise

    logger.info("Stored video %s as %d segment(s)", video_id, len(segment_paths))
    return video_id


async def ingest_upload(store: ChunkStore, file: UploadFile) -> Dict[str, Any]:
    """
    Save an uploaded video, cut it into stream-copy segments and store them.
    The temporary upload directory is removed on every path.
    """
    content_type = file.content_type or "video/mp4"
    ext = os.path.splitext(file.filename or "")[1] or ".mp4"
    workdir = Path(tempfile.mkdtemp(prefix="upload-", dir=config.SCRATCH_DIR))
    try:
        source = workdir / f"source{ext}"
        size = 0
        async with aiofiles.open(source, "wb") as out:
            while chunk := await file.read(config.CHUNK_SIZE):
                size += len(chunk)
                await out.write(chunk)
        await file.close()

        fps, width, height = await run_blocking(get_video_metadata, str(source))
        segments = await split_video(source, workdir / "segments", config.SEGMENT_TIME)

        video_id = await store_segments(
            store,
            segments,
            filename=file.filename or source.name,
            content_type=content_type,
            size=size,
            fps=fps,
            width=width,
            height=height,
        )
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    return {
        "id": video_id,
        "videoId": video_id,
        "filename": file.filename,
        "size": size,
        "content_type": content_type,
        "fps": fps,
        "width": width,
        "height": height,
        "segments": len(segments),
        "video_url": f"/videos/{video_id}",
    }


async def open_stream(
    store: ChunkStore,
    identifier: str,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> StreamSession:
    """
    Start a stream session for a video id (or one of its segment ids).
    Returns an open session ready to relay, or raises with nothing left behind.
    """
    session = StreamSession(identifier, store, is_disconnected=is_disconnected)
    return await session.open()


async def video_details(store: ChunkStore, identifier: str) -> Tuple[Optional[VideoEntry], List[SegmentRef]]:
    segments = await resolve_segments(store, identifier)
    entry = await run_blocking(store.get_video, segments[0].video_id)
    return entry, segments


async def list_videos(store: ChunkStore) -> List[VideoEntry]:
    return await run_blocking(store.list_videos)


async def delete_video(store: ChunkStore, video_id: str) -> int:
    entry = await run_blocking(store.get_video, video_id)
    removed = await run_blocking(store.delete_video, video_id)
    if entry is None and removed == 0:
        raise NotFound(f"Video not found: {video_id}")
    logger.info("Deleted video %s (%d segments)", video_id, removed)
    return removed
