# processing/segmenter.py
import asyncio
import logging
from pathlib import Path
from typing import List

from core import config
from core.errors import PipelineError
from processing.remux import ffmpeg_command

logger = logging.getLogger(__name__)


def segment_command(input_path: Path, out_dir: Path, segment_time: int) -> List[str]:
    return ffmpeg_command() + [
        "-hide_banner",
        "-nostdin",
        "-loglevel", "error",
        "-i", str(input_path),
        "-map", "0",
        "-c", "copy",
        "-f", "segment",
        "-segment_time", str(segment_time),
        "-reset_timestamps", "1",
        str(out_dir / "segment_%03d.mp4"),
    ]


async def split_video(input_path: Path, out_dir: Path, segment_time: int = 0) -> List[Path]:
    """
    Cut a video into roughly `segment_time`-second pieces without re-encoding.
    Returns the produced files in playback order.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    cmd = segment_command(input_path, out_dir, segment_time or config.SEGMENT_TIME)

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise PipelineError(f"Could not start segmenter {cmd[0]!r}: {e}") from e

    try:
        _, stderr = await proc.communicate()
    finally:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        logger.error("Segmenting %s failed (exit %s): %s", input_path, proc.returncode, message)
        raise PipelineError(f"Segmenter exited with code {proc.returncode}: {message}")

    # numeric sort: segment_1000 must come after segment_999
    segments = sorted(out_dir.glob("segment_*.mp4"), key=lambda p: int(p.stem.split("_")[-1]))
    if not segments:
        raise PipelineError(f"Segmenter produced no segments for {input_path.name}")

    logger.info("Split %s into %d segments", input_path.name, len(segments))
    return segments
