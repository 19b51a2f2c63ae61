from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from filedrop.core.templates import render_template


class UploadError(Exception):
    """Base for every failure of the upload pipeline.

    ``completed`` holds the files that were committed before the failure;
    they stay on disk and are reported back to the client.
    """

    status_code = 500
    default_message = "Upload failed"

    def __init__(self, message: str | None = None, *, completed: list | None = None) -> None:
        self.message = message or self.default_message
        self.completed = list(completed or [])
        super().__init__(self.message)

    @property
    def reason(self) -> str:
        return type(self).__name__


class SizeLimitExceeded(UploadError):
    status_code = 413
    default_message = "File too large"


class EmptyUpload(UploadError):
    status_code = 400
    default_message = "Empty upload"


class MalformedRequest(UploadError):
    status_code = 400
    default_message = "Malformed upload request"


class IOFailure(UploadError):
    status_code = 500
    default_message = "Could not write the uploaded file"


class StreamAborted(UploadError):
    status_code = 400
    default_message = "Upload stream ended unexpectedly"


def upload_error_payload(exc: UploadError) -> dict:
    payload: dict = {"error": exc.message}
    if exc.completed:
        payload["files"] = [f.name for f in exc.completed]
        payload["message"] = "Some files were uploaded before the request failed"
    return payload


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(UploadError)
    async def upload_error_handler(request: Request, exc: UploadError):
        return JSONResponse(upload_error_payload(exc), status_code=exc.status_code)

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: StarletteHTTPException):
        accept = request.headers.get("accept", "")
        detail = exc.detail if hasattr(exc, "detail") else "Not Found"
        if "text/html" not in accept:
            return JSONResponse({"error": detail}, status_code=404)
        detail_text = (
            detail
            if detail not in (None, "", "Not found", "Not Found")
            else "The file you were looking for isn't here. It may have been removed."
        )
        html = render_template("errors/404.html", {"detail": detail_text})
        return HTMLResponse(content=html, status_code=404)
