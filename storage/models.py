# storage/models.py
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, LargeBinary, UniqueConstraint
from sqlmodel import SQLModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SegmentFile(SQLModel, table=True):
    """One stored segment: the "files" half of the chunked bucket."""

    __tablename__ = "segment_files"

    id: str = Field(default_factory=_new_id, primary_key=True)
    video_id: str = Field(index=True)
    ordinal: int = Field(index=True)
    filename: str
    size_bytes: int = 0
    chunk_size: int
    chunk_count: int = 0
    uploaded_at: datetime = Field(default_factory=_utcnow)


class SegmentChunk(SQLModel, table=True):
    """One fixed-size slice of a segment's bytes, addressed by (file_id, n)."""

    __tablename__ = "segment_chunks"
    __table_args__ = (UniqueConstraint("file_id", "n", name="uq_chunk_file_n"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    file_id: str = Field(foreign_key="segment_files.id", index=True)
    n: int
    data: bytes = Field(sa_column=Column(LargeBinary, nullable=False))


class VideoEntry(SQLModel, table=True):
    __tablename__ = "videos"

    video_id: str = Field(primary_key=True)
    filename: str
    content_type: str = "video/mp4"
    size: int = 0
    fps: float = 0.0
    width: int = 0
    height: int = 0
    segment_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
