"""
Configuration settings for HubQueue
"""
import os


def _bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


# File server (WebDAV)
STORE_BACKEND = os.getenv("STORE_BACKEND", "webdav")  # webdav | memory
WEBDAV_URL = os.getenv("WEBDAV_URL", "")
WEBDAV_USERNAME = os.getenv("WEBDAV_USERNAME", "")
WEBDAV_PASSWORD = os.getenv("WEBDAV_PASSWORD", "")
WEBDAV_TIMEOUT = float(os.getenv("WEBDAV_TIMEOUT", "10"))

# Lock marker: fixed delay x fixed retry count
LOCK_RETRIES = int(os.getenv("LOCK_RETRIES", "5"))
LOCK_BACKOFF_MS = int(os.getenv("LOCK_BACKOFF_MS", "200"))
LOCK_LEASE_SECONDS = float(os.getenv("LOCK_LEASE_SECONDS", "60"))  # 0 disables reclamation and renewal

# What to do with an unparseable collection file: default | fail
COLLECTION_PARSE_POLICY = os.getenv("COLLECTION_PARSE_POLICY", "default")

# Realtime notifications
NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "local")  # local | redis | none
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REALTIME_TOPIC = os.getenv("REALTIME_TOPIC", "hubqueue:updates")
SNAPSHOT_EVENTS = _bool("SNAPSHOT_EVENTS", False)

# Auth settings
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-hubqueue-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days
REALTIME_TOKEN_EXPIRE_MINUTES = int(os.getenv("REALTIME_TOKEN_EXPIRE_MINUTES", "60"))

# Uploads
MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "25"))
ORPHAN_MIN_AGE_SECONDS = float(os.getenv("ORPHAN_MIN_AGE_SECONDS", "600"))

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
