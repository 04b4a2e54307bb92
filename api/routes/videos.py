import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from fastapi.responses import StreamingResponse

from api.streaming import SessionStreamingResponse
from core.database import get_store
from core.errors import NotFound, UnsupportedMediaType, VideoStoreError
from core.executor import run_blocking
from processing.fetcher import stream_segment
from schemas.video import (
    ErrorResponse,
    SegmentInfo,
    UploadResult,
    VideoInfo,
    VideoItem,
)
from services.video_service import (
    delete_video,
    guess_mime,
    ingest_upload,
    list_videos,
    open_stream,
    validate_video_id,
    video_details,
)
from storage.chunk_store import ChunkStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/videos", tags=["videos"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@router.post(
    "/",
    status_code=201,
    response_model=UploadResult,
    responses={415: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def upload_video(
    file: UploadFile = File(...),
    store: ChunkStore = Depends(get_store),
):
    content_type = file.content_type or ""
    if not content_type.startswith("video/"):
        raise UnsupportedMediaType(f"Unsupported media type: {content_type or 'unknown'}")

    return UploadResult(**await ingest_upload(store, file))


@router.get("/", response_model=List[VideoItem])
async def list_videos_endpoint(store: ChunkStore = Depends(get_store)):
    return [
        VideoItem(
            id=v.video_id,
            filename=v.filename,
            size=v.size,
            content_type=v.content_type,
            segments=v.segment_count,
            url=f"/videos/{v.video_id}",
        )
        for v in await list_videos(store)
    ]


async def _stream(request: Request, identifier: Optional[str], store: ChunkStore):
    video_id = validate_video_id(identifier)
    try:
        session = await open_stream(store, video_id, is_disconnected=request.is_disconnected)
    except VideoStoreError:
        raise
    except Exception as e:
        logger.exception("Stream setup for %s failed", video_id)
        raise VideoStoreError(str(e)) from e

    return SessionStreamingResponse(session)


@router.get("/stream", responses=ERROR_RESPONSES)
async def stream_video_by_query(
    request: Request,
    id: Optional[str] = Query(None),
    store: ChunkStore = Depends(get_store),
):
    return await _stream(request, id, store)


@router.get("/segments/{segment_id}/raw", responses=ERROR_RESPONSES)
async def stream_raw_segment(segment_id: str, store: ChunkStore = Depends(get_store)):
    segment_id = validate_video_id(segment_id)
    ref = await run_blocking(store.find_object_by_id, segment_id)
    if ref is None:
        raise NotFound(f"Segment not found: {segment_id}")

    content_type = guess_mime(ref.filename, "video/mp4")
    headers = {
        "Content-Length": str(ref.size_bytes),
        "Content-Disposition": f'inline; filename="{ref.filename}"',
    }
    return StreamingResponse(
        stream_segment(store, ref.segment_id), headers=headers, media_type=content_type
    )


@router.get("/{video_id}/info", response_model=VideoInfo, responses=ERROR_RESPONSES)
async def get_video_info(video_id: str, store: ChunkStore = Depends(get_store)):
    video_id = validate_video_id(video_id)
    entry, segments = await video_details(store, video_id)
    group_id = segments[0].video_id

    return VideoInfo(
        id=group_id,
        filename=entry.filename if entry else segments[0].filename,
        size=entry.size if entry else sum(s.size_bytes for s in segments),
        content_type=entry.content_type if entry else "video/mp4",
        fps=float(entry.fps) if entry else 0.0,
        width=int(entry.width) if entry else 0,
        height=int(entry.height) if entry else 0,
        url=f"/videos/{group_id}",
        segments=[
            SegmentInfo(
                id=s.segment_id,
                ordinal=s.ordinal,
                filename=s.filename,
                size=s.size_bytes,
                chunks=s.chunk_count,
            )
            for s in segments
        ],
    )


@router.get("/{video_id}", responses=ERROR_RESPONSES)
async def stream_video(
    video_id: str,
    request: Request,
    store: ChunkStore = Depends(get_store),
):
    return await _stream(request, video_id, store)


@router.delete("/{video_id}", responses=ERROR_RESPONSES)
async def delete_video_endpoint(video_id: str, store: ChunkStore = Depends(get_store)):
    video_id = validate_video_id(video_id)
    removed = await delete_video(store, video_id)
    return {"status": "ok", "id": video_id, "segments": removed}
