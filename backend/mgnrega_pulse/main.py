import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from mgnrega_pulse.api.routes import router as api_router
from mgnrega_pulse.core.config import get_settings
from mgnrega_pulse.core.errors import PulseError
from mgnrega_pulse.core.logging import configure_logging
from mgnrega_pulse.services.background import PeriodicTask
from mgnrega_pulse.services.container import build_services

logger = logging.getLogger(__name__)


def create_app(settings=None, services=None, run_background=True) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "services", None) is None:
            try:
                app.state.services = build_services(settings)
            except OperationalError:
                logger.exception("Database connection failed")
                raise

        tasks = []
        if run_background:
            svc = app.state.services
            tasks = [
                PeriodicTask("cache-sweep", settings.CACHE_CHECK_PERIOD, svc.cache.sweep),
                PeriodicTask("cache-warm", settings.WARM_INTERVAL, svc.orchestrator.warm_cache),
            ]
            for task in tasks:
                task.start()
        try:
            yield
        finally:
            for task in tasks:
                await task.stop()

    app = FastAPI(title="MGNREGA Pulse API", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = services

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PulseError)
    async def pulse_error_handler(request: Request, exc: PulseError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"success": False, "error": "INTERNAL_ERROR", "message": "Internal Server Error"}
        if settings.is_development:
            body["message"] = str(exc)
            body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
        return JSONResponse(status_code=500, content=body)

    # Include your API routes
    app.include_router(api_router)

    # Root route
    @app.get("/")
    def root():
        return {"message": "MGNREGA Pulse backend is running successfully!"}

    return app


configure_logging(get_settings().LOG_LEVEL)
app = create_app()
