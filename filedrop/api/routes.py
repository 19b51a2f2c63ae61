from __future__ import annotations

import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse, PlainTextResponse, StreamingResponse

from filedrop.config import (
    CACHE_MAX_AGE_SECONDS,
    EVENT_HEARTBEAT_SECONDS,
    MAX_FILE_SIZE,
    SUBSCRIBER_QUEUE_SIZE,
    UPLOAD_DIR,
)
from filedrop.core.exceptions import UploadError
from filedrop.core.metrics import metrics
from filedrop.core.templates import render_template
from filedrop.decoder import decode_upload
from filedrop.services.broadcaster import ChangeBroadcaster, stream_snapshots
from filedrop.services.stats import fetch_storage_totals
from filedrop.storage import format_size, list_stored_files

router = APIRouter()

logger = logging.getLogger("filedrop")

UPLOAD_ROOT = Path(UPLOAD_DIR).resolve()

broadcaster = ChangeBroadcaster(lambda: list_stored_files(UPLOAD_DIR), queue_size=SUBSCRIBER_QUEUE_SIZE)


@router.get("/", include_in_schema=False)
async def home():
    html = render_template("pages/index.html", {"max_file_text": format_size(MAX_FILE_SIZE)})
    return HTMLResponse(content=html)


@router.get("/uploads")
def list_uploads(request: Request):
    files = list_stored_files(UPLOAD_DIR)
    accept = request.headers.get("accept", "")
    if "application/json" in accept:
        return JSONResponse([f.model_dump(mode="json") for f in files])
    lines = [f"{f.name}\t{f.size}\t{f.modified.isoformat()}\n" for f in files]
    return PlainTextResponse("".join(lines))


@router.get("/uploads/events")
async def upload_events(request: Request):
    return StreamingResponse(
        stream_snapshots(broadcaster, request.is_disconnected, EVENT_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/uploads/{filename}")
def serve_file(filename: str):
    try:
        path = (UPLOAD_ROOT / filename).resolve()
        path.relative_to(UPLOAD_ROOT)
    except (ValueError, RuntimeError):
        raise HTTPException(status_code=404, detail="Not found")
    if not path.is_file() or path.parent != UPLOAD_ROOT:
        raise HTTPException(status_code=404, detail="Not found")

    metrics.record_download()
    logger.info("event=file_served filename=%s path=%s", filename, path)

    response = FileResponse(path)
    response.headers["Cache-Control"] = f"public, max-age={CACHE_MAX_AGE_SECONDS}"
    return response


@router.post("/upload")
async def upload(request: Request):
    try:
        files = await decode_upload(request.headers, request.stream(), UPLOAD_DIR, MAX_FILE_SIZE)
    except UploadError as exc:
        metrics.record_failure(exc.reason)
        for stored in exc.completed:
            metrics.record_upload(stored.size)
        logger.warning(
            "event=upload_failed reason=%s error=%s completed=%s",
            exc.reason,
            exc.message,
            len(exc.completed),
        )
        raise

    for stored in files:
        metrics.record_upload(stored.size)

    if len(files) == 1:
        return {"message": "File uploaded", "file": files[0].name}
    return {"message": f"{len(files)} files uploaded", "files": [f.name for f in files]}


@router.get("/metrics")
def metrics_snapshot():
    payload = metrics.snapshot()
    payload.update(fetch_storage_totals(UPLOAD_DIR))
    payload["subscribers"] = broadcaster.subscriber_count
    response = JSONResponse(payload)
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response
