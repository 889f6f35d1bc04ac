import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import alembic.config
import alembic.command
from app.core.config import settings
from app.core.database import engine
from app.core.exceptions import AppError
from app.api.router import api_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def run_migrations():
    """Sync function to run migrations"""
    alembic_cfg = alembic.config.Config("alembic.ini")
    alembic.command.upgrade(alembic_cfg, "head")


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Apply any pending migrations automatically when the app starts
    try:
        await asyncio.to_thread(run_migrations)
        logger.info("Migrations applied successfully (or already up-to-date)")
    except Exception as e:
        logger.error(f"Migration error during startup: {e}")

    yield
    await engine.dispose()


app = FastAPI(title="QueryGate API", lifespan=lifespan)


# Core errors carry their own status code
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, **exc.extra()},
    )


# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "QueryGate: submit database queries for review"}
