from __future__ import annotations

import errno
import logging
import os
import secrets
from datetime import datetime, timezone

from filedrop.config import PROGRESS_LOG_BYTES
from filedrop.core.exceptions import EmptyUpload, IOFailure, SizeLimitExceeded
from filedrop.models import StoredFile
from filedrop.naming import resolve_filename

logger = logging.getLogger("filedrop.storage")

INCOMING_DIR_NAME = ".incoming"
_PART_SUFFIX = ".part"
_MAX_COMMIT_ATTEMPTS = 100
_LINK_UNSUPPORTED = {errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EXDEV}


def incoming_dir(upload_dir: str) -> str:
    return os.path.join(upload_dir, INCOMING_DIR_NAME)


def format_size(value: int) -> str:
    return f"{value / (1024 * 1024):.1f} MB"


class UploadSink:
    """Terminates one upload stream into a file inside the storage directory.

    Bytes go to a private ``.part`` file under ``.incoming``; only ``close``
    makes them visible, by hard-linking the part file to a collision-free
    name. Any failure removes the part file before the error is raised.
    """

    def __init__(self, upload_dir: str, requested_name: str | None, content_type: str | None, max_bytes: int) -> None:
        self.upload_dir = upload_dir
        self.requested_name = requested_name
        self.content_type = content_type
        self.max_bytes = max_bytes
        self.bytes_written = 0
        self.stored_name: str | None = None
        self._part_path: str | None = None
        self._fh = None
        self._next_progress = PROGRESS_LOG_BYTES

    @classmethod
    def open(cls, upload_dir: str, requested_name: str | None, content_type: str | None = None, *, max_bytes: int) -> "UploadSink":
        sink = cls(upload_dir, requested_name, content_type, max_bytes)
        staging = incoming_dir(upload_dir)
        try:
            os.makedirs(staging, exist_ok=True)
            part_path = os.path.join(staging, secrets.token_hex(8) + _PART_SUFFIX)
            sink._fh = open(part_path, "xb")
        except OSError as exc:
            logger.error("event=upload_failed reason=open name=%s error=%s", requested_name, exc)
            raise IOFailure(f"Could not create upload file: {exc.strerror or exc}") from exc
        sink._part_path = part_path
        return sink

    @property
    def closed(self) -> bool:
        return self._fh is None

    def write(self, chunk: bytes) -> None:
        if self._fh is None:
            raise IOFailure("Upload sink is closed")
        if not chunk:
            return
        if self.bytes_written + len(chunk) > self.max_bytes:
            self.abort()
            logger.warning(
                "event=upload_rejected reason=max_size name=%s size_bytes=%s limit_bytes=%s",
                self.requested_name,
                self.bytes_written + len(chunk),
                self.max_bytes,
            )
            raise SizeLimitExceeded(f"File too large. Maximum allowed size is {format_size(self.max_bytes)}.")
        try:
            self._fh.write(chunk)
        except OSError as exc:
            self.abort()
            logger.error("event=upload_failed reason=write name=%s error=%s", self.requested_name, exc)
            raise IOFailure(f"Could not write upload: {exc.strerror or exc}") from exc
        self.bytes_written += len(chunk)

        if self.bytes_written >= self._next_progress:
            logger.info(
                "event=upload_progress name=%s bytes_written=%s",
                self.requested_name,
                self.bytes_written,
            )
            self._next_progress += PROGRESS_LOG_BYTES

    def close(self) -> StoredFile:
        if self._fh is None:
            raise IOFailure("Upload sink is closed")
        try:
            self._fh.flush()
            os.fsync(self._fh.fileno())
            self._fh.close()
            self._fh = None
        except OSError as exc:
            self.abort()
            logger.error("event=upload_failed reason=flush name=%s error=%s", self.requested_name, exc)
            raise IOFailure(f"Could not write upload: {exc.strerror or exc}") from exc

        if self.bytes_written == 0:
            self.abort()
            logger.warning("event=upload_rejected reason=empty name=%s", self.requested_name)
            raise EmptyUpload("Uploaded file is empty")

        try:
            stat = os.stat(self._part_path)
            self.stored_name = self._commit()
        except OSError as exc:
            self.abort()
            logger.error("event=upload_failed reason=commit name=%s error=%s", self.requested_name, exc)
            raise IOFailure(f"Could not store upload: {exc.strerror or exc}") from exc
        finally:
            self._discard_part()

        return StoredFile(
            name=self.stored_name,
            size=stat.st_size,
            modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        )

    def _commit(self) -> str:
        # os.link refuses to replace an existing name, so two sinks racing
        # for the same name never overwrite each other.
        for _ in range(_MAX_COMMIT_ATTEMPTS):
            name = resolve_filename(self.upload_dir, self.requested_name, self.content_type)
            try:
                os.link(self._part_path, os.path.join(self.upload_dir, name))
            except FileExistsError:
                continue
            except OSError as exc:
                if exc.errno in _LINK_UNSUPPORTED:
                    logger.error(
                        "event=upload_failed reason=link_unsupported name=%s upload_dir=%s error=%s",
                        self.requested_name,
                        self.upload_dir,
                        exc,
                    )
                    raise IOFailure("Storage directory does not support hard links") from exc
                raise
            return name
        logger.error(
            "event=upload_failed reason=name_exhausted name=%s attempts=%s",
            self.requested_name,
            _MAX_COMMIT_ATTEMPTS,
        )
        raise IOFailure("Unable to allocate a unique file name")

    def abort(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError as exc:
                logger.warning("event=upload_abort_close name=%s error=%s", self.requested_name, exc)
            self._fh = None
        self._discard_part()

    def _discard_part(self) -> None:
        if self._part_path is None:
            return
        try:
            os.unlink(self._part_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("event=part_cleanup_failed path=%s error=%s", self._part_path, exc)
        self._part_path = None


def list_stored_files(upload_dir: str) -> list[StoredFile]:
    """Current contents of the storage directory, newest first."""
    files: list[StoredFile] = []
    try:
        entries = list(os.scandir(upload_dir))
    except OSError as exc:
        logger.warning("event=listing_failed upload_dir=%s error=%s", upload_dir, exc)
        return files

    for entry in entries:
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            stat = entry.stat(follow_symlinks=False)
        except OSError:
            continue  # removed while listing
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        files.append(StoredFile(name=entry.name, size=stat.st_size, modified=modified))

    files.sort(key=lambda f: f.modified, reverse=True)
    return files


def purge_incoming(upload_dir: str) -> int:
    """Delete part files left behind by an interrupted process."""
    staging = incoming_dir(upload_dir)
    removed = 0
    try:
        entries = list(os.scandir(staging))
    except FileNotFoundError:
        return 0
    for entry in entries:
        if not entry.name.endswith(_PART_SUFFIX):
            continue
        try:
            os.unlink(entry.path)
            removed += 1
        except OSError as exc:
            logger.warning("event=incoming_purge_failed path=%s error=%s", entry.path, exc)
    if removed:
        logger.info("event=incoming_purged count=%s", removed)
    return removed
