import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
SCRATCH_DIR = Path(os.getenv("SCRATCH_DIR", str(DATA_DIR / "scratch")))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'segments.db'}")

STORE_CHUNK_SIZE = int(os.getenv("STORE_CHUNK_SIZE", str(255 * 1024)))  # GridFS default
STORE_POOL_SIZE = int(os.getenv("STORE_POOL_SIZE", "5"))

CHUNK_SIZE = 1024 * 1024  # 1 MiB for upload reads
PIPE_READ_SIZE = int(os.getenv("PIPE_READ_SIZE", str(64 * 1024)))
FETCH_CONCURRENCY = int(os.getenv("FETCH_CONCURRENCY", "4"))
SEGMENT_TIME = int(os.getenv("SEGMENT_TIME", "8"))
DISCONNECT_POLL_INTERVAL = float(os.getenv("DISCONNECT_POLL_INTERVAL", "0.5"))

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv(
        "CORS_ORIGINS",
        "http://localhost,http://127.0.0.1,http://localhost:5173,http://localhost:3000",
    ).split(",")
    if o.strip()
]
