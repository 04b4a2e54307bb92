import logging

from fastapi.responses import StreamingResponse
from starlette.types import Receive, Scope, Send

from core.errors import Cancelled
from services.stream_session import SessionState, StreamSession

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Content-Encoding": "identity",
}


class SessionStreamingResponse(StreamingResponse):
    """
    Streams a session's remux output and owns the session's teardown: however
    the send loop ends (finished, failed, client gone) the session is closed
    before the response returns.
    """

    def __init__(self, session: StreamSession, media_type: str = "video/mp4") -> None:
        super().__init__(session.relay(), headers=STREAM_HEADERS, media_type=media_type)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            if not self.session.closed:
                logger.info("[%s] Client closed the stream", self.session.session_id)
            await self.session.close(
                SessionState.CANCELLED, Cancelled("Client closed the stream")
            )
