from fastapi import FastAPI
from fastapi.requests import Request
from src.export.routes import export_router
from src.export.service import build_export_service
from src.middleware import register_middleware
from src.errors import register_all_errors
import uvicorn, os
from src.db.db import create_tables, dispose_async_engine
from contextlib import asynccontextmanager
from src.db.redis import init_redis_client
from src.config import settings
from src.logging_config import setup_logging
import logging
setup_logging()

logger = logging.getLogger(__name__)


version = "v1"

description = """
Account data export API for the Journey app: request an export of your
entries and media, follow its progress, and download the archive.
"""

version_prefix = f"/api/{version}"



@asynccontextmanager
async def lifespan(app: FastAPI):

    app.state.redis = None
    if settings.EXPORT_JOB_STORE == "redis":
        app.state.redis = init_redis_client(
            settings.REDIS_HOST,
            settings.REDIS_PORT,
            settings.REDIS_USERNAME,
            settings.REDIS_PASSWORD,
            settings.REDIS_DB,
        )
        try:
            await app.state.redis.ping()
        except Exception as e:
            logger.error(f"Error connecting to Redis: {e}")

    if settings.CREATE_TABLES_ON_STARTUP:
        await create_tables() # This will bypass migrations

    app.state.export_service = build_export_service(settings, redis=app.state.redis)

    yield

    runner = app.state.export_service.runner
    if hasattr(runner, "in_flight") and runner.in_flight():
        logger.warning(
            f"Shutting down with {runner.in_flight()} export job(s) still running; "
            "they will stay 'running' until their status records expire"
        )
    if app.state.redis is not None:
        await app.state.redis.aclose()
    await dispose_async_engine()


app = FastAPI(
    lifespan=lifespan,
    title="Journey Export API",
    description=description,
    version=version,
    license_info={"name": "MIT License", "url": "https://opensource.org/license/mit"},
    openapi_url=f"{version_prefix}/openapi.json",
    docs_url=f"{version_prefix}/docs",
    redoc_url=f"{version_prefix}/redoc"
)


# Register error handlers and middleware
register_all_errors(app)
register_middleware(app)



@app.get("/")
async def root():
    return {"message": "Welcome to the Journey Export API"}


@app.get("/health")
async def health(request: Request):
    """Liveness plus a Redis ping when the job store lives in Redis."""
    redis = getattr(request.app.state, "redis", None)
    if redis is None:
        return {"status": "ok", "redis": "not configured"}
    try:
        await redis.ping()
        return {"status": "ok", "redis": "ok"}
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return {"status": "degraded", "redis": "unreachable"}


app.include_router(
    export_router,
    prefix=f"{version_prefix}/exports",
    tags=["Exports"]
)



if __name__ == "__main__":
    ENV = os.getenv("ENV", settings.APP_ENV)
    PORT = int(os.getenv("PORT", 8000))

    uvicorn.run(
        app="main:app",
        host="0.0.0.0" if ENV == "production" else "localhost",
        port=PORT,
        reload=True if ENV == "development" else False,
        proxy_headers=True
    )
