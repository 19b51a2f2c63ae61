import os
from dotenv import load_dotenv

load_dotenv()

UPLOAD_DIR = os.getenv(
    "UPLOAD_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "uploads"))
)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "9999"))
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Effectively unlimited for local use, but still a hard cap.
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(100 * 1024 * 1024 * 1024)))
PROGRESS_LOG_BYTES = max(1, int(os.getenv("PROGRESS_LOG_BYTES", str(64 * 1024 * 1024))))
CACHE_MAX_AGE_SECONDS = int(os.getenv("CACHE_MAX_AGE_SECONDS", "3600"))
FILENAME_HEADER = os.getenv("FILENAME_HEADER", "x-filename").lower()

# Directory watcher / live listing
ENABLE_WATCHER = os.getenv("ENABLE_WATCHER", "true").lower() in {"true", "1", "yes"}
WATCH_INTERVAL_SECONDS = float(os.getenv("WATCH_INTERVAL_SECONDS", "1.0"))
EVENT_HEARTBEAT_SECONDS = float(os.getenv("EVENT_HEARTBEAT_SECONDS", "15"))
SUBSCRIBER_QUEUE_SIZE = max(1, int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "8")))
