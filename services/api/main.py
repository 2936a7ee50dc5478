"""FastAPI front door for the storefront session scraper."""
import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from .config import Settings, get_browser_config, get_settings, get_target_url
from .routes import health, scrape, session
from core.scraper_service import ScraperService
from utils.config_loader import config_loader
from utils.logger import get_logger

logger = get_logger("services.api")


def build_service(settings: Settings) -> ScraperService:
    """Build the scraper service from settings plus the optional settings file."""
    overrides = config_loader.load_optional_config(settings.settings_file)
    return ScraperService.from_config(
        overrides,
        cookies_file=settings.cookies_file,
        token_file=settings.token_file,
        proxies=settings.proxies,
        max_concurrent=settings.max_concurrent,
        browser_config=get_browser_config(settings),
        request_delay_ms=settings.request_delay_ms,
        target_url=get_target_url(settings),
    )


async def _initial_acquisition(service: ScraperService) -> None:
    try:
        result = await service.ensure_session()
    except Exception:
        logger.exception("Session initialization error, API will run without fresh cookies")
        return
    if result is not None and not result.success:
        logger.warning("Session initialization failed, API will work with existing cookies only")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Startup: build the scraper service and, unless a marketing token
      already exists, acquire a session in the background
    - Shutdown: cancel a still-running acquisition
    """
    settings = get_settings()
    logger.info(f"[API] Starting up on port {settings.port}")
    app.state.service = build_service(settings)

    startup_task: Optional[asyncio.Task] = None
    if settings.acquire_on_startup:
        startup_task = asyncio.create_task(_initial_acquisition(app.state.service))
    app.state.startup_task = startup_task

    yield

    logger.info("[API] Shutting down...")
    if startup_task is not None and not startup_task.done():
        startup_task.cancel()
        try:
            await startup_task
        except asyncio.CancelledError:
            logger.info("[API] Startup acquisition cancelled")


app = FastAPI(
    title="Storefront Session Scraper API",
    version="1.0.0",
    description="""
    Extracts window.__PRELOADED_STATE__ from storefront product pages using a
    browser session acquired the way a visitor would browse.

    Endpoints:
    - GET /naver?productUrl=... - scrape product state
    - POST /api/session/refresh - acquire a fresh session
    - GET /api/health - session file and admission status
    """,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"{request.method} {request.url.path}")
    return await call_next(request)


app.include_router(scrape.router, tags=["scrape"])
app.include_router(session.router, prefix="/api", tags=["session"])
app.include_router(health.router, prefix="/api", tags=["health"])


@app.get("/")
def root():
    """
    Root endpoint.

    Example response:
        ```json
        {
            "status": "ok",
            "service": "storefront-session-scraper",
            "version": "1.0.0",
            "endpoints": {"scrape": "/naver?productUrl=...", "health": "/api/health"}
        }
        ```
    """
    return {
        "status": "ok",
        "service": "storefront-session-scraper",
        "version": "1.0.0",
        "endpoints": {
            "scrape": "/naver?productUrl=...",
            "refresh_session": "/api/session/refresh",
            "health": "/api/health",
            "docs": "/api/docs",
        },
        "example": "/naver?productUrl=https://smartstore.naver.com/store/products/123456",
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "services.api.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
