from typing import Optional


class VideoStoreError(Exception):
    """
    Base class for every error a stream or store request can end with.
    `status_code` and `code` are what the HTTP layer reports before streaming starts.
    """

    status_code = 500
    code = "Internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(VideoStoreError):
    status_code = 400
    code = "MissingId"


class NotFound(VideoStoreError):
    status_code = 404
    code = "NotFound"


class FetchFailed(VideoStoreError):
    """A store read failed while draining one segment's chunks."""

    def __init__(self, segment_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Failed to fetch segment {segment_id}: {cause}")
        self.segment_id = segment_id
        self.cause = cause


class PipelineError(VideoStoreError):
    """The remux process could not be started or exited with an error."""


class Cancelled(VideoStoreError):
    status_code = 499
    code = "Cancelled"


class UnsupportedMediaType(VideoStoreError):
    status_code = 415
    code = "UnsupportedMediaType"
