# processing/resolver.py
import logging
from typing import List

from core.errors import NotFound
from core.executor import run_blocking
from storage.chunk_store import BlobStore, SegmentRef

logger = logging.getLogger(__name__)


def order_segments(segments: List[SegmentRef]) -> List[SegmentRef]:
    """Playback order: ordinal ascending, stable for equal ordinals."""
    return sorted(segments, key=lambda s: s.ordinal)


async def resolve_segments(store: BlobStore, identifier: str) -> List[SegmentRef]:
    """
    Find the ordered segment set for `identifier`.

    The identifier is first taken as a video id. If no segment carries it,
    it is looked up as a single segment's own id and the segment's video
    is resolved instead, so the referenced segment is always part of the result.
    """
    segments = await run_blocking(store.find_objects_by_group, identifier)
    if segments:
        return order_segments(segments)

    ref = await run_blocking(store.find_object_by_id, identifier)
    if ref is None:
        raise NotFound(f"No segments found for id: {identifier}")

    logger.info(
        "Id %s is segment %r (ordinal %d) of video %s",
        identifier, ref.filename, ref.ordinal, ref.video_id,
    )
    segments = await run_blocking(store.find_objects_by_group, ref.video_id)
    if not any(s.segment_id == ref.segment_id for s in segments):
        segments.append(ref)
    return order_segments(segments)
