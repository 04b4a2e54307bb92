import asyncio
from pathlib import Path

import pytest

from core import config
from core.errors import PipelineError
from processing.remux import (
    OUTPUT_ARGS,
    ProcessState,
    RemuxProcess,
    build_remux_command,
    escape_concat_path,
)


async def _run(argv):
    async with RemuxProcess(argv) as process:
        output = b"".join([chunk async for chunk in process.stream()])
    return process, output


def _write_sources(tmp_path, *payloads):
    paths = []
    for i, payload in enumerate(payloads):
        path = tmp_path / f"{i:05d}_segment_{i:03d}.mp4"
        path.write_bytes(payload)
        paths.append(path)
    return paths


def test_single_source_skips_concat_manifest(tmp_path, fake_remux):
    sources = _write_sources(tmp_path, b"only")

    command = build_remux_command(sources, tmp_path)

    assert command.manifest is None
    assert not (tmp_path / "concat.txt").exists()
    assert "concat" not in command.argv
    assert command.argv[command.argv.index("-i") + 1] == str(sources[0].resolve())
    assert command.argv[-len(OUTPUT_ARGS):] == OUTPUT_ARGS


def test_multiple_sources_use_manifest_in_order(tmp_path, fake_remux):
    sources = _write_sources(tmp_path, b"a", b"b", b"c")

    command = build_remux_command(sources, tmp_path)

    assert command.manifest == tmp_path / "concat.txt"
    lines = command.manifest.read_text(encoding="utf-8").splitlines()
    assert lines == [f"file '{p.resolve()}'" for p in sources]
    i = command.argv.index("-i")
    assert command.argv[i - 4:i] == ["-f", "concat", "-safe", "0"]


def test_output_policy_is_stream_copy_fragmented_mp4():
    assert OUTPUT_ARGS[OUTPUT_ARGS.index("-c") + 1] == "copy"
    assert "empty_moov" in OUTPUT_ARGS[OUTPUT_ARGS.index("-movflags") + 1]
    assert OUTPUT_ARGS[OUTPUT_ARGS.index("-f") + 1] == "mp4"


def test_no_sources_is_a_pipeline_error(tmp_path):
    with pytest.raises(PipelineError):
        build_remux_command([], tmp_path)


def test_escape_concat_path_quotes():
    assert escape_concat_path(Path("/tmp/it's.mp4")) == "/tmp/it'\\''s.mp4"


def test_process_concatenates_and_exits(tmp_path, fake_remux):
    sources = _write_sources(tmp_path, b"first-", b"second-", b"third")
    command = build_remux_command(sources, tmp_path)

    process, output = asyncio.run(_run(command.argv))

    assert output == b"first-second-third"
    assert process.state is ProcessState.EXITED
    assert process.returncode == 0
    assert process.progress.get("progress") == "end"


def test_process_nonzero_exit_raises_pipeline_error(tmp_path, fake_remux, monkeypatch):
    monkeypatch.setenv("FAKE_REMUX_MODE", "fail")
    command = build_remux_command(_write_sources(tmp_path, b"x"), tmp_path)

    with pytest.raises(PipelineError) as exc_info:
        asyncio.run(_run(command.argv))

    assert "Invalid data found" in str(exc_info.value)


def test_missing_binary_raises_pipeline_error(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "FFMPEG_BIN", str(tmp_path / "no-such-ffmpeg"))
    command = build_remux_command(_write_sources(tmp_path, b"x"), tmp_path)

    with pytest.raises(PipelineError):
        asyncio.run(_run(command.argv))


def test_kill_reaps_running_process(tmp_path, fake_remux, monkeypatch):
    monkeypatch.setenv("FAKE_REMUX_MODE", "hang")
    command = build_remux_command(_write_sources(tmp_path, b"x" * 10), tmp_path)

    async def scenario():
        process = RemuxProcess(command.argv)
        await process.start()
        output = process.stream()
        first = await output.__anext__()
        await asyncio.wait_for(process.kill(), timeout=5)
        await output.aclose()
        await process.kill()
        return process, first

    process, first = asyncio.run(scenario())

    assert first
    assert process.state is ProcessState.KILLED
    assert process.returncode is not None
