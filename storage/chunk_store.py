# storage/chunk_store.py
import logging
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Protocol

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from core.config import STORE_CHUNK_SIZE
from storage.models import SegmentChunk, SegmentFile, VideoEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentRef:
    segment_id: str
    video_id: str
    ordinal: int
    filename: str
    size_bytes: int
    chunk_count: int


class BlobStore(Protocol):
    def find_object_by_id(self, object_id: str) -> Optional[SegmentRef]: ...

    def find_objects_by_group(self, video_id: str) -> List[SegmentRef]: ...

    def get_chunk(self, object_id: str, n: int) -> Optional[bytes]: ...


def _to_ref(row: SegmentFile) -> SegmentRef:
    return SegmentRef(
        segment_id=row.id,
        video_id=row.video_id,
        ordinal=row.ordinal,
        filename=row.filename,
        size_bytes=row.size_bytes,
        chunk_count=row.chunk_count,
    )


class ChunkStore:
    """
    Chunked blob store on top of a pooled SQL engine.

    Objects are segments: a `segment_files` row plus dense, zero-based
    `segment_chunks` rows. Every method borrows a connection from the engine
    pool for the duration of the call, so a store instance can be shared
    across requests and threads.
    """

    def __init__(self, engine: Engine, chunk_size: int = STORE_CHUNK_SIZE) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.engine = engine
        self.chunk_size = chunk_size

    # ---- reads ----

    def find_object_by_id(self, object_id: str) -> Optional[SegmentRef]:
        with Session(self.engine) as session:
            row = session.get(SegmentFile, object_id)
            return _to_ref(row) if row else None

    def find_objects_by_group(self, video_id: str) -> List[SegmentRef]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SegmentFile)
                .where(SegmentFile.video_id == video_id)
                .order_by(SegmentFile.ordinal, SegmentFile.id)
            ).all()
            return [_to_ref(r) for r in rows]

    def get_chunk(self, object_id: str, n: int) -> Optional[bytes]:
        with Session(self.engine) as session:
            data = session.exec(
                select(SegmentChunk.data).where(
                    SegmentChunk.file_id == object_id,
                    SegmentChunk.n == n,
                )
            ).first()
            return bytes(data) if data is not None else None

    def get_video(self, video_id: str) -> Optional[VideoEntry]:
        with Session(self.engine) as session:
            return session.get(VideoEntry, video_id)

    def list_videos(self) -> List[VideoEntry]:
        with Session(self.engine) as session:
            return list(
                session.exec(select(VideoEntry).order_by(VideoEntry.created_at)).all()
            )

    # ---- writes ----

    def put_object(
        self,
        video_id: str,
        ordinal: int,
        filename: str,
        stream: BinaryIO,
    ) -> SegmentRef:
        """
        Split `stream` into fixed-size chunks and store them with the file row
        in a single transaction: the segment is either fully committed or absent.
        """
        with Session(self.engine) as session:
            row = SegmentFile(
                video_id=video_id,
                ordinal=ordinal,
                filename=filename,
                chunk_size=self.chunk_size,
            )
            session.add(row)
            session.flush()

            n = 0
            size = 0
            while True:
                data = stream.read(self.chunk_size)
                if not data:
                    break
                session.add(SegmentChunk(file_id=row.id, n=n, data=data))
                size += len(data)
                n += 1

            row.size_bytes = size
            row.chunk_count = n
            session.add(row)
            session.commit()
            session.refresh(row)

            logger.debug(
                "Stored segment %s (video %s, ordinal %d): %d chunks, %d bytes",
                row.id, video_id, ordinal, n, size,
            )
            return _to_ref(row)

    def put_video(self, entry: VideoEntry) -> VideoEntry:
        with Session(self.engine) as session:
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def delete_video(self, video_id: str) -> int:
        """Remove a video row, its segments and their chunks. Returns the segment count removed."""
        with Session(self.engine) as session:
            file_ids = list(
                session.exec(
                    select(SegmentFile.id).where(SegmentFile.video_id == video_id)
                ).all()
            )
            if file_ids:
                session.exec(delete(SegmentChunk).where(col(SegmentChunk.file_id).in_(file_ids)))
                session.exec(delete(SegmentFile).where(col(SegmentFile.id).in_(file_ids)))
            session.exec(delete(VideoEntry).where(VideoEntry.video_id == video_id))
            session.commit()
            return len(file_ids)
