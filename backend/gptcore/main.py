from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import get_settings
from .core.logging import configure_logging
from .api.routes_research import router as research_router
from .api.routes_stream import router as stream_router
from .services.job_store import build_job_store
from .services.jobs import ResearchJobManager
from .services.retention import CleanupScheduler
from .services.upstream import ResearchUpstream

configure_logging()
settings = get_settings()
logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    # - In prod, FRONTEND_ORIGIN is required and we never fall back to "*".
    # - In non-prod, wide-open CORS is only enabled if CORS_ALLOW_ALL_ORIGINS=True.
    configured = [
        o.strip()
        for o in (settings.FRONTEND_ORIGIN or "").split(",")
        if o.strip()
    ]
    if settings.ENV.lower() == "prod":
        if not configured:
            raise RuntimeError(
                "FRONTEND_ORIGIN must be set in production – refusing to start with wide-open CORS."
            )
        return configured
    if settings.CORS_ALLOW_ALL_ORIGINS or not configured:
        return ["*"]
    return configured


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    if getattr(state, "upstream", None) is None:
        state.upstream = ResearchUpstream(settings=settings)
    if getattr(state, "job_manager", None) is None:
        state.job_manager = ResearchJobManager(
            build_job_store(settings), state.upstream, settings=settings
        )

    scheduler = None
    if state.run_cleanup:
        scheduler = CleanupScheduler.from_settings(state.job_manager.store, settings)
        scheduler.start()
        logger.info("Job cleanup scheduler started", extra={"step": "startup"})
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app(
    job_manager: ResearchJobManager | None = None,
    upstream: ResearchUpstream | None = None,
    run_cleanup: bool = True,
) -> FastAPI:
    app = FastAPI(title="GPTCore Research API", lifespan=lifespan)
    app.state.job_manager = job_manager
    app.state.upstream = upstream
    app.state.run_cleanup = run_cleanup

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    app.include_router(research_router, prefix=settings.API_PREFIX)
    app.include_router(stream_router, prefix=settings.API_PREFIX)
    return app


app = create_app()
