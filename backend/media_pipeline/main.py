import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from media_pipeline.api.routes import router as api_router
from media_pipeline.core.config import APP_NAME, APP_VERSION, Settings, load_settings
from media_pipeline.core.errors import MediaPipelineError
from media_pipeline.services.container import Services, build_services
from media_pipeline.workers.pool import WorkerPool

REAP_INTERVAL_SECONDS = 60


def _parse_allowed_origins() -> list[str]:
    raw = os.getenv("ALLOWED_ORIGINS", "")
    if not raw.strip():
        return ["http://localhost:3000"]
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MediaPipelineError)
    async def pipeline_error(request: Request, exc: MediaPipelineError):
        return _error(exc.message, exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _error(f"Invalid request: {detail}", 400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logging.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error("Internal server error", 500)


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the API. With `services` given (tests), nothing is started;
    otherwise the lifespan wires collaborators from settings and, without
    Celery, runs the in-process worker pool.
    """
    settings = settings or (services.settings if services else load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        pool = None
        if settings.use_celery:
            from media_pipeline.workers.tasks import deliver_via_celery

            built = build_services(settings, deliver_via_celery)
        else:
            pool = WorkerPool(settings.worker_concurrency)
            built = build_services(settings, pool.deliver)
            pool.start(built.dispatcher, built.queue, reap_interval=REAP_INTERVAL_SECONDS)
            await pool.recover(built.queue)

        app.state.services = built
        try:
            yield
        finally:
            if pool is not None:
                await pool.stop()
            await built.close()

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    os.makedirs(settings.media_dir, exist_ok=True)
    app.mount(
        "/media",
        StaticFiles(directory=settings.media_dir),
        name="media",
    )

    # Allow frontend dev server, Vercel previews, and configured origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_allowed_origins(),
        allow_origin_regex=os.getenv(
            "ALLOWED_ORIGIN_REGEX", r"https://.*\.vercel\.app"
        ),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
