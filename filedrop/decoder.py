from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Mapping
from datetime import datetime
from urllib.parse import unquote

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.concurrency import run_in_threadpool
from starlette.requests import ClientDisconnect

from filedrop.config import FILENAME_HEADER
from filedrop.core.exceptions import MalformedRequest, SizeLimitExceeded, StreamAborted, UploadError
from filedrop.models import StoredFile
from filedrop.storage import UploadSink, format_size

logger = logging.getLogger("filedrop.decoder")


def _content_length(headers: Mapping[str, str]) -> int | None:
    value = headers.get("content-length")
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def synthesize_filename(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("upload-%Y%m%d-%H%M%S")


class MultipartUpload:
    """Feeds a multipart body through python-multipart, one sink per file part.

    Parser callbacks only record what they saw; the recorded events are
    replayed after every ``parser.write`` so disk writes can be awaited.
    """

    def __init__(self, boundary: bytes, upload_dir: str, max_size: int) -> None:
        self.upload_dir = upload_dir
        self.max_size = max_size
        self.completed: list[StoredFile] = []
        self._events: list[tuple] = []
        self._header_field = b""
        self._header_value = b""
        self._headers: dict[bytes, bytes] = {}
        self._sink: UploadSink | None = None
        self._ended = False
        self._parser = MultipartParser(
            boundary,
            {
                "on_part_begin": self._on_part_begin,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_end": self._on_end,
            },
        )

    # parser callbacks

    def _on_part_begin(self) -> None:
        self._headers = {}

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._events.append(("data", data[start:end]))

    def _on_part_end(self) -> None:
        self._events.append(("end",))

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        self._events.append(("headers", dict(self._headers)))

    def _on_end(self) -> None:
        self._ended = True

    # event replay

    async def feed(self, chunk: bytes) -> None:
        parse_error = None
        try:
            self._parser.write(chunk)
        except MultipartParseError as exc:
            parse_error = exc
        # parts that ended before the bad bytes are still committed
        events, self._events = self._events, []
        for event in events:
            kind = event[0]
            if kind == "headers":
                await self._start_part(event[1])
            elif kind == "data" and self._sink is not None:
                await run_in_threadpool(self._sink.write, event[1])
            elif kind == "end" and self._sink is not None:
                sink, self._sink = self._sink, None
                stored = await run_in_threadpool(sink.close)
                self.completed.append(stored)
                logger.info(
                    "event=upload_success name=%s size_bytes=%s content_type=%s",
                    stored.name,
                    stored.size,
                    sink.content_type,
                )
        if parse_error is not None:
            raise MalformedRequest(f"Malformed multipart body: {parse_error}") from parse_error

    async def _start_part(self, headers: dict[bytes, bytes]) -> None:
        _, options = parse_options_header(headers.get(b"content-disposition", b""))
        filename = options.get(b"filename")
        if not filename:
            # plain form field, or a file input left empty
            self._sink = None
            return
        content_type = headers.get(b"content-type", b"").decode("latin-1") or None
        self._sink = await run_in_threadpool(
            UploadSink.open,
            self.upload_dir,
            filename.decode("utf-8", errors="replace"),
            content_type,
            max_bytes=self.max_size,
        )

    def finish(self) -> list[StoredFile]:
        self._parser.finalize()
        if self._sink is not None:
            raise StreamAborted("Upload ended before the file part was complete")
        if not self._ended:
            # closing boundary never arrived; later parts may have been lost
            raise StreamAborted("Upload ended before the multipart body was complete")
        if not self.completed:
            raise MalformedRequest("No file parts found in request")
        return self.completed

    def abort(self) -> None:
        if self._sink is not None:
            self._sink.abort()
            self._sink = None


async def _decode_multipart(content_type: str, stream: AsyncIterator[bytes], upload_dir: str, max_size: int) -> list[StoredFile]:
    _, params = parse_options_header(content_type)
    boundary = params.get(b"boundary")
    if not boundary:
        raise MalformedRequest("Missing multipart boundary")

    upload = MultipartUpload(boundary, upload_dir, max_size)
    try:
        async for chunk in stream:
            await upload.feed(chunk)
        return upload.finish()
    except ClientDisconnect as exc:
        raise StreamAborted("Client disconnected during upload", completed=upload.completed) from exc
    except UploadError as exc:
        exc.completed = list(upload.completed)
        raise
    finally:
        upload.abort()


async def _decode_raw(headers: Mapping[str, str], stream: AsyncIterator[bytes], upload_dir: str, max_size: int) -> list[StoredFile]:
    requested = headers.get(FILENAME_HEADER)
    name = unquote(requested) if requested else synthesize_filename()
    content_type = headers.get("content-type")

    sink = await run_in_threadpool(UploadSink.open, upload_dir, name, content_type, max_bytes=max_size)
    try:
        async for chunk in stream:
            await run_in_threadpool(sink.write, chunk)
        stored = await run_in_threadpool(sink.close)
    except ClientDisconnect as exc:
        raise StreamAborted("Client disconnected during upload") from exc
    finally:
        if not sink.closed:
            sink.abort()

    logger.info(
        "event=upload_success name=%s size_bytes=%s content_type=%s",
        stored.name,
        stored.size,
        content_type,
    )
    return [stored]


async def decode_upload(
    headers: Mapping[str, str],
    stream: AsyncIterator[bytes],
    upload_dir: str,
    max_size: int,
) -> list[StoredFile]:
    """Persist every file carried by a request body and report what was stored.

    ``headers`` must be case-insensitive (starlette ``Headers``) or use
    lower-case keys. Raises an ``UploadError``; its ``completed`` lists the
    files that were stored before the failure.
    """
    length = _content_length(headers)
    if length is not None and length > max_size:
        logger.warning(
            "event=upload_rejected reason=max_size content_length=%s limit_bytes=%s",
            length,
            max_size,
        )
        raise SizeLimitExceeded(f"File too large. Maximum allowed size is {format_size(max_size)}.")

    content_type = headers.get("content-type") or ""
    if content_type.lower().startswith("multipart/form-data"):
        return await _decode_multipart(content_type, stream, upload_dir, max_size)
    return await _decode_raw(headers, stream, upload_dir, max_size)
