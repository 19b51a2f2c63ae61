import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("filedrop.watcher")


def directory_signature(upload_dir):
    signature = set()
    try:
        entries = list(os.scandir(upload_dir))
    except OSError:
        return frozenset()
    for entry in entries:
        try:
            if not entry.is_file(follow_symlinks=False):
                continue
            stat = entry.stat(follow_symlinks=False)
        except OSError:
            continue
        signature.add((entry.name, stat.st_size, stat.st_mtime_ns))
    return frozenset(signature)


class DirectoryWatcher:
    """Polls the storage directory and reports every add, remove or modify."""

    def __init__(self, upload_dir, broadcaster):
        self.upload_dir = upload_dir
        self.broadcaster = broadcaster
        self._last = directory_signature(upload_dir)

    def check(self):
        current = directory_signature(self.upload_dir)
        if current == self._last:
            return False
        self._last = current
        self.broadcaster.on_directory_changed()
        return True


def start_watcher(upload_dir, broadcaster, interval_seconds):
    watcher = DirectoryWatcher(upload_dir, broadcaster)
    scheduler = BackgroundScheduler()

    def _job():
        try:
            watcher.check()
        except Exception as e:
            # keep the job scheduled; the next tick retries
            logger.error("Unexpected error in directory watch job: %s", str(e))

    scheduler.add_job(_job, "interval", seconds=interval_seconds, max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("event=watcher_started upload_dir=%s interval_seconds=%s", upload_dir, interval_seconds)
    return scheduler
