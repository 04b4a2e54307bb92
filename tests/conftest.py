import io
import shlex
import sys
import threading
import time
from pathlib import Path

import pytest
from sqlmodel import SQLModel, create_engine

from core import config
from storage.chunk_store import ChunkStore

FAKE_REMUX = Path(__file__).with_name("fake_remux.py")


def segment_bytes(ordinal: int, size: int) -> bytes:
    return bytes((ordinal * 37 + i) % 251 for i in range(size))


class RecordingStore:
    """Wraps a store and records every chunk lookup, from whichever pool thread ran it."""

    def __init__(self, inner, fail_on=None, delay: float = 0.0) -> None:
        self.inner = inner
        self.fail_on = fail_on  # (segment_id, n)
        self.delay = delay
        self.lookups = []
        self._lock = threading.Lock()

    def find_object_by_id(self, object_id):
        return self.inner.find_object_by_id(object_id)

    def find_objects_by_group(self, video_id):
        return self.inner.find_objects_by_group(video_id)

    def get_chunk(self, object_id, n):
        if self.delay:
            time.sleep(self.delay)
        data = self.inner.get_chunk(object_id, n)
        with self._lock:
            self.lookups.append((object_id, n, data is not None))
        if self.fail_on == (object_id, n):
            raise ConnectionError("store went away")
        return data

    def hits(self):
        return [(sid, n) for sid, n, found in self.lookups if found]


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'store.db'}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return ChunkStore(engine, chunk_size=60)


@pytest.fixture
def add_video(store):
    def _add(sizes, video_id="V1", ordinals=None):
        ordinals = ordinals if ordinals is not None else range(len(sizes))
        return [
            store.put_object(video_id, o, f"segment_{o:03d}.mp4", io.BytesIO(segment_bytes(o, s)))
            for o, s in zip(ordinals, sizes)
        ]

    return _add


@pytest.fixture
def scratch(tmp_path, monkeypatch):
    path = tmp_path / "scratch"
    path.mkdir()
    monkeypatch.setattr(config, "SCRATCH_DIR", path)
    return path


@pytest.fixture
def fake_remux(monkeypatch):
    monkeypatch.setattr(config, "FFMPEG_BIN", shlex.join([sys.executable, str(FAKE_REMUX)]))
    monkeypatch.setenv("FAKE_REMUX_MODE", "cat")
    return FAKE_REMUX
