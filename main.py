import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.routes.videos import router as videos_router
from core import config
from core.database import dispose_engine, init_engine
from core.errors import VideoStoreError
from core.logging_config import configure_logging
from services.video_service import ensure_dirs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_dirs()
    init_engine(config.DATABASE_URL)
    try:
        yield
    finally:
        dispose_engine()


async def video_store_error_handler(request: Request, exc: VideoStoreError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title="Segmented video store and restreaming",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(VideoStoreError, video_store_error_handler)
    app.include_router(videos_router)

    return app


app = create_app()
