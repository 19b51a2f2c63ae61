import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from filedrop.api.routes import broadcaster, router
from filedrop.config import CORS_ORIGINS, ENABLE_WATCHER, LOG_LEVEL, UPLOAD_DIR, WATCH_INTERVAL_SECONDS
from filedrop.core.exceptions import register_exception_handlers
from filedrop.storage import purge_incoming
from filedrop.watcher import start_watcher

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("filedrop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    purge_incoming(UPLOAD_DIR)
    logger.info("Storing uploads in %s", UPLOAD_DIR)

    scheduler = None
    if ENABLE_WATCHER:
        scheduler = start_watcher(UPLOAD_DIR, broadcaster, WATCH_INTERVAL_SECONDS)
    else:
        logger.info("Directory watcher disabled. Live listing updates will not be pushed.")
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.shutdown(wait=False)


app = FastAPI(title="filedrop", version="1.0.0", lifespan=lifespan)

origins = [origin.strip() for origin in CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
register_exception_handlers(app)
