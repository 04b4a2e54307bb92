import asyncio
import logging
import re
import shutil
import time
import uuid
from contextlib import AsyncExitStack, aclosing
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, TypeVar

from core import config
from core.errors import Cancelled
from processing.fetcher import FetchResult, fetch_segments
from processing.remux import RemuxCommand, RemuxProcess, build_remux_command
from processing.resolver import resolve_segments
from storage.chunk_store import BlobStore, SegmentRef

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    INITIALIZING = "initializing"
    RESOLVING_SEGMENTS = "resolving_segments"
    FETCHING_SEGMENTS = "fetching_segments"
    REMUXING = "remuxing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}

_TRANSITIONS = {
    SessionState.INITIALIZING: {SessionState.RESOLVING_SEGMENTS, SessionState.FAILED},
    SessionState.RESOLVING_SEGMENTS: {SessionState.FETCHING_SEGMENTS, SessionState.FAILED},
    SessionState.FETCHING_SEGMENTS: {
        SessionState.REMUXING,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.REMUXING: {
        SessionState.STREAMING,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.STREAMING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
}


class StreamSession:
    """
    One client request to play a stored video.

    `open()` walks initializing -> resolving_segments -> fetching_segments ->
    remuxing, and `relay()` streams the remux output. The scratch workspace and
    the remux process are held in an exit stack, and `close()` unwinds it
    exactly once whichever terminal state is reached.
    """

    def __init__(
        self,
        identifier: str,
        store: BlobStore,
        *,
        scratch_root: Optional[Path] = None,
        concurrency: Optional[int] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        disconnect_poll: Optional[float] = None,
    ) -> None:
        self.identifier = identifier
        self.store = store
        self.scratch_root = Path(scratch_root or config.SCRATCH_DIR)
        self.concurrency = concurrency or config.FETCH_CONCURRENCY
        self.is_disconnected = is_disconnected
        self.disconnect_poll = disconnect_poll or config.DISCONNECT_POLL_INTERVAL

        self.session_id = uuid.uuid4().hex[:8]
        self.state = SessionState.INITIALIZING
        self.workspace: Optional[Path] = None
        self.segments: List[SegmentRef] = []
        self.fetched: List[FetchResult] = []
        self.command: Optional[RemuxCommand] = None
        self.process: Optional[RemuxProcess] = None
        self.cancelled = False
        self.error: Optional[BaseException] = None
        self.bytes_sent = 0

        self._resources = AsyncExitStack()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _transition(self, new: SessionState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new not in allowed:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {new.value}")
        logger.debug("[%s] %s -> %s", self.session_id, self.state.value, new.value)
        self.state = new

    # ---- workspace ----

    def _allocate_workspace(self) -> Path:
        self.scratch_root.mkdir(parents=True, exist_ok=True)
        safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", self.identifier)[:64]
        path = self.scratch_root / f"video-{safe_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        path.mkdir()
        self.workspace = path
        self._resources.callback(self._remove_workspace, path)
        return path

    def _remove_workspace(self, path: Path) -> None:
        try:
            shutil.rmtree(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("[%s] Cleanup of %s failed: %s", self.session_id, path, e)
        else:
            logger.debug("[%s] Removed workspace %s", self.session_id, path)

    # ---- lifecycle ----

    async def open(self) -> "StreamSession":
        """Resolve, fetch and spawn the remuxer. Any failure closes the session before re-raising."""
        try:
            workspace = self._allocate_workspace()

            self._transition(SessionState.RESOLVING_SEGMENTS)
            self.segments = await resolve_segments(self.store, self.identifier)
            logger.info(
                "[%s] Resolved %d segment(s) for %s",
                self.session_id, len(self.segments), self.identifier,
            )

            self._transition(SessionState.FETCHING_SEGMENTS)
            started = time.monotonic()
            self.fetched = await self._unless_disconnected(
                fetch_segments(self.store, self.segments, workspace, self.concurrency)
            )
            logger.info(
                "[%s] Fetched %d segment(s), %d bytes in %.2fs",
                self.session_id,
                len(self.fetched),
                sum(f.size_bytes for f in self.fetched),
                time.monotonic() - started,
            )

            self._transition(SessionState.REMUXING)
            self.command = build_remux_command([f.path for f in self.fetched], workspace)
            self.process = await self._resources.enter_async_context(
                RemuxProcess(self.command.argv)
            )
        except asyncio.CancelledError:
            await self.close(SessionState.CANCELLED, Cancelled("Request cancelled before streaming"))
            raise
        except Cancelled as e:
            await self.close(SessionState.CANCELLED, e)
            raise
        except Exception as e:
            await self.close(SessionState.FAILED, e)
            raise
        return self

    async def _unless_disconnected(self, work: Awaitable[T]) -> T:
        if self.is_disconnected is None:
            return await work

        work_task = asyncio.ensure_future(work)
        watcher = asyncio.ensure_future(self._wait_for_disconnect())
        try:
            await asyncio.wait({work_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work_task, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(work_task, watcher, return_exceptions=True)

        if not work_task.cancelled():
            return work_task.result()
        raise Cancelled("Client disconnected while segments were being fetched")

    async def _wait_for_disconnect(self) -> None:
        assert self.is_disconnected is not None
        while not await self.is_disconnected():
            await asyncio.sleep(self.disconnect_poll)
        logger.info("[%s] Client disconnected", self.session_id)

    async def relay(self) -> AsyncIterator[bytes]:
        """
        Yield remux output as it is produced. A pipeline error mid-stream fails
        the session and truncates the body; closing the generator early leaves
        the cancellation to whoever owns the session.
        """
        if self.process is None:
            raise RuntimeError("StreamSession.open() must complete before relay()")

        self._transition(SessionState.STREAMING)
        try:
            async with aclosing(self.process.stream()) as output:
                async for data in output:
                    self.bytes_sent += len(data)
                    yield data
        except Exception as e:
            logger.error("[%s] Stream aborted after %d bytes: %s", self.session_id, self.bytes_sent, e)
            await self.close(SessionState.FAILED, e)
            raise

        await self.close(SessionState.COMPLETED)

    async def close(
        self,
        state: SessionState = SessionState.CANCELLED,
        error: Optional[BaseException] = None,
    ) -> None:
        """
        Move to a terminal state and tear down the remux process and the
        workspace. Only the first call has any effect.
        """
        if self._closed:
            return
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        if state is SessionState.CANCELLED and SessionState.CANCELLED not in _TRANSITIONS.get(self.state, set()):
            # nothing to cancel before fetching starts
            state = SessionState.FAILED

        self._transition(state)
        self._closed = True
        self.cancelled = state is SessionState.CANCELLED
        self.error = error

        try:
            await self._resources.aclose()
        finally:
            if state is SessionState.FAILED:
                logger.warning("[%s] Session failed: %s", self.session_id, error)
            else:
                logger.info(
                    "[%s] Session %s (%d bytes sent)", self.session_id, state.value, self.bytes_sent
                )
