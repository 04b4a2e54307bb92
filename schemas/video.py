from typing import List, Optional
from pydantic import BaseModel


class VideoItem(BaseModel):
    id: str
    filename: str
    size: int
    content_type: str
    segments: int
    url: str


class SegmentInfo(BaseModel):
    id: str
    ordinal: int
    filename: str
    size: int
    chunks: int


class VideoInfo(BaseModel):
    id: str
    filename: str
    size: int
    content_type: str
    fps: float
    width: int
    height: int
    url: str
    segments: List[SegmentInfo]


class UploadResult(BaseModel):
    id: str
    videoId: str
    filename: Optional[str] = None
    size: int
    content_type: str
    fps: float
    width: int
    height: int
    segments: int
    video_url: str


class ErrorResponse(BaseModel):
    error: str          # MissingId | NotFound | UnsupportedMediaType | Internal
    detail: str
