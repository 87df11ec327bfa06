import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .admin import router as admin_router
from .auth import router as auth_router
from .config import settings
from .database import Base, SessionLocal, engine
from .limiter import limiter
from .logging_config import setup_logging
from .routes import router as api_router
from .services.activity_processor import ActivityProcessor
from .services.strava_client import StravaClient
from .services.subscription import SubscriptionManager
from .services.token_vault import get_token_vault
from .services.weather import WeatherCache, WeatherResolver, run_cache_sweeper
from .webhook import router as webhook_router

setup_logging()
logger = logging.getLogger(__name__)


async def _delayed_subscription_setup(manager: SubscriptionManager, delay: float) -> None:
    # Give the server time to start accepting the verification request
    await asyncio.sleep(delay)
    await manager.ensure_subscription()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail fast on a missing encryption key in production
    get_token_vault()

    # Create tables on startup
    Base.metadata.create_all(bind=engine)

    cache = WeatherCache(settings.WEATHER_CACHE_TTL_S)
    strava_client = StravaClient(settings)
    weather_resolver = WeatherResolver(settings, cache=cache)
    app.state.strava_client = strava_client
    app.state.weather_resolver = weather_resolver
    app.state.processor = ActivityProcessor(strava_client, weather_resolver, SessionLocal)
    app.state.subscription_manager = SubscriptionManager(settings)

    tasks = [asyncio.create_task(run_cache_sweeper(cache, settings.WEATHER_CACHE_SWEEP_INTERVAL_S))]
    if settings.should_setup_webhook_on_startup:
        tasks.append(asyncio.create_task(
            _delayed_subscription_setup(app.state.subscription_manager, settings.WEBHOOK_SETUP_DELAY_S)
        ))

    logger.info(f"Strava Weather API started ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        await app.state.subscription_manager.cleanup_on_shutdown()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Strava Weather API stopped")


app = FastAPI(title="Strava Weather", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Token"],
)

# Include routers
app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(webhook_router, prefix="/api/strava", tags=["webhook"])
app.include_router(admin_router, prefix="/api/admin", tags=["admin"])
app.include_router(api_router, prefix="/api", tags=["api"])


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"message": "Internal Server Error", "code": 500}},
    )


@app.get("/")
def read_root():
    return {"message": "Strava Weather API is running"}
