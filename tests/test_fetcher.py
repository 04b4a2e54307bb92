import asyncio
import io

import pytest
from sqlalchemy import delete
from sqlmodel import Session

from conftest import RecordingStore, segment_bytes
from core.errors import FetchFailed
from processing.fetcher import ChunkIterator, fetch_segment, fetch_segments, local_name
from storage.models import SegmentChunk


async def _collect(iterator):
    return [chunk async for chunk in iterator]


def _max_in_flight(lookups):
    """Most segments that were between their first and last chunk lookup at once."""
    spans = {}
    for i, (sid, _, _) in enumerate(lookups):
        first, _ = spans.get(sid, (i, i))
        spans[sid] = (first, i)
    events = sorted([(first, 1) for first, _ in spans.values()] + [(last, -1) for _, last in spans.values()])
    peak = active = 0
    for _, step in events:
        active += step
        peak = max(peak, active)
    return peak


def test_chunk_iterator_reads_until_missing(store, add_video):
    ref = add_video([150])[0]
    recording = RecordingStore(store)

    chunks = asyncio.run(_collect(ChunkIterator(recording, ref.segment_id)))

    assert b"".join(chunks) == segment_bytes(0, 150)
    assert [(n, found) for _, n, found in recording.lookups] == [
        (0, True),
        (1, True),
        (2, True),
        (3, False),
    ]


def test_fetch_segment_writes_all_bytes(store, add_video, tmp_path):
    ref = add_video([100, 150])[1]

    result = asyncio.run(fetch_segment(store, ref, tmp_path / local_name(ref, 1)))

    assert result.chunk_count == 3
    assert result.size_bytes == 150
    assert result.path.read_bytes() == segment_bytes(1, 150)


def test_fetch_failure_discards_partial_file(store, add_video, tmp_path):
    ref = add_video([150])[0]
    flaky = RecordingStore(store, fail_on=(ref.segment_id, 2))
    dest = tmp_path / "partial.mp4"

    with pytest.raises(FetchFailed) as exc_info:
        asyncio.run(fetch_segment(flaky, ref, dest))

    assert exc_info.value.segment_id == ref.segment_id
    assert isinstance(exc_info.value.cause, ConnectionError)
    assert not dest.exists()


def test_fetch_segment_with_missing_middle_chunk_fails(store, add_video, engine, tmp_path):
    ref = add_video([150])[0]
    with Session(engine) as session:
        session.exec(
            delete(SegmentChunk).where(SegmentChunk.file_id == ref.segment_id, SegmentChunk.n == 1)
        )
        session.commit()
    dest = tmp_path / "truncated.mp4"

    with pytest.raises(FetchFailed) as exc_info:
        asyncio.run(fetch_segment(store, ref, dest))

    assert exc_info.value.segment_id == ref.segment_id
    assert isinstance(exc_info.value.cause, OSError)
    assert not dest.exists()


def test_fetch_segments_keeps_order_and_chunk_sequence(store, add_video, tmp_path):
    refs = add_video([100, 150, 120])
    recording = RecordingStore(store)

    results = asyncio.run(fetch_segments(recording, refs, tmp_path, concurrency=3))

    assert [r.segment_id for r in results] == [r.segment_id for r in refs]
    assert [r.chunk_count for r in results] == [2, 3, 2]
    assert len(recording.hits()) == 7
    for ref in refs:
        indices = [n for sid, n in recording.hits() if sid == ref.segment_id]
        assert indices == list(range(ref.chunk_count))
    for i, r in enumerate(results):
        assert r.path.read_bytes() == segment_bytes(i, [100, 150, 120][i])


def test_fetch_segments_runs_segments_in_parallel(store, add_video, tmp_path):
    refs = add_video([150, 150, 150])
    slow = RecordingStore(store, delay=0.05)

    asyncio.run(fetch_segments(slow, refs, tmp_path, concurrency=3))

    assert 1 < _max_in_flight(slow.lookups) <= 3


def test_fetch_segments_never_exceeds_limit(store, add_video, tmp_path):
    refs = add_video([150, 150, 150, 150])
    slow = RecordingStore(store, delay=0.02)

    asyncio.run(fetch_segments(slow, refs, tmp_path, concurrency=2))

    assert _max_in_flight(slow.lookups) == 2


def test_fetch_segments_with_single_slot_does_not_interleave(store, add_video, tmp_path):
    refs = add_video([100, 150, 120])
    recording = RecordingStore(store)

    asyncio.run(fetch_segments(recording, refs, tmp_path, concurrency=1))

    order = [sid for sid, _, _ in recording.lookups]
    assert order == sorted(order, key=[r.segment_id for r in refs].index)
    assert _max_in_flight(recording.lookups) == 1


def test_fetch_segments_keeps_tied_ordinals_apart(store, tmp_path):
    payloads = {}
    for payload in (b"A" * 100, b"B" * 150):
        ref = store.put_object("VT", 0, "segment_000.mp4", io.BytesIO(payload))
        payloads[ref.segment_id] = payload
    refs = store.find_objects_by_group("VT")

    results = asyncio.run(fetch_segments(store, refs, tmp_path, concurrency=2))

    assert len({r.path for r in results}) == 2
    assert [r.path.read_bytes() for r in results] == [payloads[r.segment_id] for r in refs]


def test_fetch_segments_failure_propagates(store, add_video, tmp_path):
    refs = add_video([100, 150, 120])
    flaky = RecordingStore(store, fail_on=(refs[1].segment_id, 1))

    with pytest.raises(FetchFailed) as exc_info:
        asyncio.run(fetch_segments(flaky, refs, tmp_path, concurrency=3))

    assert exc_info.value.segment_id == refs[1].segment_id
    assert not (tmp_path / local_name(refs[1], 1)).exists()
