# processing/remux.py
import asyncio
import logging
import re
import shlex
from collections import deque
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence

from core import config
from core.errors import Cancelled, PipelineError

logger = logging.getLogger(__name__)

# stream copy into fragmented MP4 so playback can start before the end is written
OUTPUT_ARGS = [
    "-map", "0",
    "-c", "copy",
    "-movflags", "frag_keyframe+empty_moov+default_base_moof",
    "-f", "mp4",
    "pipe:1",
]

_PROGRESS_LINE = re.compile(r"^[a-z0-9_]+=\S*$")


@dataclass(frozen=True)
class RemuxCommand:
    argv: List[str]
    manifest: Optional[Path] = None


def ffmpeg_command() -> List[str]:
    return shlex.split(config.FFMPEG_BIN)


def escape_concat_path(path: Path) -> str:
    return str(path).replace("\\", "/").replace("'", "'\\''")


def write_concat_manifest(sources: Sequence[Path], workspace: Path) -> Path:
    """
    Write an ffmpeg concat-demuxer list, one `file '...'` line per source, in order.
    """
    manifest = workspace / "concat.txt"
    lines = [f"file '{escape_concat_path(Path(p).resolve())}'" for p in sources]
    manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return manifest


def build_remux_command(sources: Sequence[Path], workspace: Path) -> RemuxCommand:
    """
    One source is remuxed on its own; several are joined through a concat
    manifest first. Both paths stream-copy, nothing is re-encoded.
    """
    if not sources:
        raise PipelineError("No input sources to remux")

    argv = ffmpeg_command() + [
        "-hide_banner",
        "-nostdin",
        "-loglevel", "error",
        "-progress", "pipe:2",
        "-nostats",
    ]

    manifest: Optional[Path] = None
    if len(sources) == 1:
        argv += ["-i", str(Path(sources[0]).resolve())]
    else:
        manifest = write_concat_manifest(sources, workspace)
        argv += ["-f", "concat", "-safe", "0", "-i", str(manifest)]

    return RemuxCommand(argv=argv + OUTPUT_ARGS, manifest=manifest)


class ProcessState(str, Enum):
    PENDING = "pending"
    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class RemuxProcess:
    """
    Owned remux child process.

    `pending -> spawned -> running -> {exited, killed}`. Use it as an async
    context manager: entering spawns the process, leaving always kills and
    reaps it if it is still alive. Output is pulled on demand by `stream()`,
    so a slow consumer stops the reads and the full pipe blocks the process.
    """

    def __init__(self, argv: Sequence[str], read_size: Optional[int] = None) -> None:
        self.argv = list(argv)
        self.read_size = read_size or config.PIPE_READ_SIZE
        self.state = ProcessState.PENDING
        self.proc: Optional[asyncio.subprocess.Process] = None
        self.progress: Dict[str, str] = {}
        self._stderr_tail: Deque[str] = deque(maxlen=20)
        self._stderr_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.returncode if self.proc else None

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def __aenter__(self) -> "RemuxProcess":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.kill()

    async def start(self) -> None:
        if self.state is not ProcessState.PENDING:
            raise RuntimeError(f"Remux process already {self.state.value}")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Remux process could not start (%s): %s", self.argv[0], e)
            raise PipelineError(f"Could not start remux process {self.argv[0]!r}: {e}") from e

        self.state = ProcessState.SPAWNED
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("Remux started (pid %s): %s", self.pid, shlex.join(self.argv))

    async def _drain_stderr(self) -> None:
        assert self.proc is not None and self.proc.stderr is not None
        async for raw in self.proc.stderr:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if _PROGRESS_LINE.match(line):
                key, _, value = line.partition("=")
                self.progress[key] = value
                if key == "progress":
                    logger.debug(
                        "Remux progress (pid %s): out_time=%s total_size=%s",
                        self.pid,
                        self.progress.get("out_time"),
                        self.progress.get("total_size"),
                    )
            else:
                self._stderr_tail.append(line)

    async def stream(self) -> AsyncIterator[bytes]:
        if self.state is not ProcessState.SPAWNED or self.proc is None:
            raise RuntimeError(f"Cannot stream a remux process that is {self.state.value}")
        assert self.proc.stdout is not None

        self.state = ProcessState.RUNNING
        while True:
            data = await self.proc.stdout.read(self.read_size)
            if not data:
                break
            yield data

        returncode = await self.proc.wait()
        if self._stderr_task is not None:
            await self._stderr_task

        if self.state is ProcessState.KILLED:
            raise Cancelled(f"Remux process {self.pid} was killed")

        self.state = ProcessState.EXITED
        if returncode != 0:
            logger.error("Remux failed (pid %s, exit %s): %s", self.pid, returncode, self.stderr_tail)
            raise PipelineError(
                f"Remux process exited with code {returncode}: {self.stderr_tail or 'no output'}"
            )
        logger.info("Remux completed (pid %s)", self.pid)

    async def kill(self) -> None:
        """Force-terminate and reap the process. Safe to call any number of times."""
        if self.proc is None:
            return

        if self.proc.returncode is None:
            with suppress(ProcessLookupError):
                self.proc.kill()
            self.state = ProcessState.KILLED
            logger.info("Remux killed (pid %s)", self.pid)
            await self.proc.wait()
        elif self.state in (ProcessState.SPAWNED, ProcessState.RUNNING):
            self.state = ProcessState.EXITED

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)
