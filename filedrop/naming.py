from __future__ import annotations

import os
import re

PLACEHOLDER_NAME = "upload"
MAX_NAME_LENGTH = 200

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9.-]")

MIME_EXTENSIONS = {
    # images
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/svg+xml": ".svg",
    "image/tiff": ".tiff",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "image/heic": ".heic",
    "image/avif": ".avif",
    # video
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/ogg": ".ogv",
    "video/quicktime": ".mov",
    "video/x-msvideo": ".avi",
    "video/x-matroska": ".mkv",
    "video/mpeg": ".mpeg",
    # audio
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
    "audio/aac": ".aac",
    "audio/mp4": ".m4a",
    "audio/webm": ".weba",
    # documents
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/vnd.oasis.opendocument.text": ".odt",
    "application/vnd.oasis.opendocument.spreadsheet": ".ods",
    "application/rtf": ".rtf",
    "application/epub+zip": ".epub",
    # archives
    "application/zip": ".zip",
    "application/x-zip-compressed": ".zip",
    "application/gzip": ".gz",
    "application/x-gzip": ".gz",
    "application/x-tar": ".tar",
    "application/x-7z-compressed": ".7z",
    "application/vnd.rar": ".rar",
    "application/x-rar-compressed": ".rar",
    "application/x-bzip2": ".bz2",
    # text
    "text/plain": ".txt",
    "text/csv": ".csv",
    "text/html": ".html",
    "text/css": ".css",
    "text/markdown": ".md",
    "text/xml": ".xml",
    "application/xml": ".xml",
    "application/json": ".json",
    "application/x-yaml": ".yaml",
    "text/yaml": ".yaml",
    # fonts
    "font/ttf": ".ttf",
    "font/otf": ".otf",
    "font/woff": ".woff",
    "font/woff2": ".woff2",
    # code
    "text/javascript": ".js",
    "application/javascript": ".js",
    "application/typescript": ".ts",
    "text/x-python": ".py",
    "application/x-python-code": ".py",
    "text/x-c": ".c",
    "text/x-java-source": ".java",
    "application/x-sh": ".sh",
    "application/sql": ".sql",
    "application/wasm": ".wasm",
}


def _truncate(name: str) -> str:
    if len(name) <= MAX_NAME_LENGTH:
        return name
    stem, ext = os.path.splitext(name)
    ext = ext[:16]
    return stem[: MAX_NAME_LENGTH - len(ext)] + ext


def sanitize_filename(name: str | None) -> str:
    """Reduce a client supplied name to a bare, filesystem-safe filename."""
    base = (name or "").replace("\\", "/").split("/")[-1]
    safe = _UNSAFE_CHARS.sub("_", base)
    if not safe.strip("."):
        return PLACEHOLDER_NAME
    return _truncate(safe)


def extension_for(content_type: str | None) -> str:
    if not content_type:
        return ""
    mime = content_type.split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(mime, "")


def candidate_names(name: str):
    """Yield ``name``, then ``stem(1).ext``, ``stem(2).ext`` and so on."""
    stem, ext = os.path.splitext(name)
    yield name
    counter = 1
    while True:
        yield f"{stem}({counter}){ext}"
        counter += 1


def resolve_filename(upload_dir: str, requested_name: str | None, content_type: str | None = None) -> str:
    """Pick the first free name for ``requested_name`` inside ``upload_dir``.

    The check is not a reservation: callers must create the target
    exclusively and call again if it turns out to be taken.
    """
    safe = sanitize_filename(requested_name)
    if not os.path.splitext(safe)[1]:
        safe = _truncate(safe + extension_for(content_type))

    for candidate in candidate_names(safe):
        if not os.path.lexists(os.path.join(upload_dir, candidate)):
            return candidate
