from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import logging

from signal_desk.core.cache import RedisCache, get_redis_client, invalidate_signal_cache
from signal_desk.core.config import get_config
from signal_desk.core.db import dispose_db, init_db
from signal_desk.core.exceptions import InvalidSignalData
from signal_desk.core.websocket_manager import manager
from signal_desk.routers import logs, signals, stream
from signal_desk.services.storage import storage

logger = logging.getLogger(__name__)


def setup_logging(level: str = None):
    logging.basicConfig(
        level=level or get_config().LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


app = FastAPI(title="Signal Desk")

# Routers
app.include_router(signals.router, prefix="/api")
app.include_router(logs.router, prefix="/api")
app.include_router(stream.router)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(InvalidSignalData)
async def invalid_signal_handler(request: Request, exc: InvalidSignalData):
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"Database error: {exc}"})


@app.on_event("startup")
async def startup_event():
    setup_logging()
    await init_db()
    await RedisCache._initialize()

    backfilled = await storage.backfill_closed_time()
    if backfilled:
        logger.info(f"Backfilled closed_time on {backfilled} signals")

    config = get_config()
    logger.info(f"Startup: DB initialized, WebSocket {'enabled' if config.ENABLE_WS else 'disabled'}")


@app.on_event("shutdown")
async def shutdown_event():
    await RedisCache.close()
    await dispose_db()
    logger.info("Shutdown: connections closed.")


@app.get("/debug/cache/status")
async def cache_status():
    redis_client = await get_redis_client()
    status = {"redis_available": redis_client is not None, "cache_keys": []}

    if redis_client:
        try:
            status["cache_keys"] = [key async for key in redis_client.scan_iter(match="signals:*")]
        except Exception as e:
            status["error"] = str(e)

    return status


@app.post("/debug/cache/clear")
async def clear_cache():
    removed = await invalidate_signal_cache()
    return {"message": "Signal cache cleared", "keys_removed": removed}


@app.get("/")
async def root():
    return {
        "message": "Signal Desk API running.",
        "websocket_clients": len(manager.active_connections),
    }


__all__ = ["app"]
