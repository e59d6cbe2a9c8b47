"""Configuration for the SIORG sync worker."""
import os
import socket
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)
CHECKPOINT_DIR = Path(os.getenv("CHECKPOINT_DIR", str(BASE_DIR / "data" / "checkpoints")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")
DB_POOL_MIN = int(os.getenv("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.getenv("DB_POOL_MAX", "10"))

# SIORG registry
REGISTRY_BASE_URL = os.getenv("REGISTRY_BASE_URL", "https://api.siorg.gov.br")
REGISTRY_TOKEN = os.getenv("REGISTRY_TOKEN")
REGISTRY_TIMEOUT = int(os.getenv("REGISTRY_TIMEOUT", "30"))
REGISTRY_MAX_RETRIES = int(os.getenv("REGISTRY_MAX_RETRIES", "2"))

# Worker settings
WORKER_ID = os.getenv("WORKER_ID", f"{socket.gethostname()}-{os.getpid()}")
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5"))  # seconds between claims
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))  # seconds
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60.0"))
RETRY_JITTER = float(os.getenv("RETRY_JITTER", "0.2"))  # +/- fraction of the delay
LEASE_SECONDS = int(os.getenv("LEASE_SECONDS", "300"))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "4"))

# Cleanup of expired items
CLEANUP_ENABLED = _bool("CLEANUP_ENABLED", "true")
CLEANUP_INTERVAL = int(os.getenv("CLEANUP_INTERVAL", "3600"))

# Change feed producer
CHANGE_FEED_ENABLED = _bool("CHANGE_FEED_ENABLED", "false")
CHANGE_FEED_INTERVAL = int(os.getenv("CHANGE_FEED_INTERVAL", "300"))
CHANGE_FEED_OVERLAP_SECONDS = int(os.getenv("CHANGE_FEED_OVERLAP_SECONDS", "120"))
QUEUE_ITEM_TTL_HOURS = int(os.getenv("QUEUE_ITEM_TTL_HOURS", "72"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not REGISTRY_BASE_URL.startswith(("http://", "https://")):
        errors.append(f"REGISTRY_BASE_URL must be an http(s) URL: {REGISTRY_BASE_URL}")

    if BATCH_SIZE < 1:
        errors.append(f"BATCH_SIZE must be positive: {BATCH_SIZE}")

    if MAX_ATTEMPTS < 1:
        errors.append(f"MAX_ATTEMPTS must be positive: {MAX_ATTEMPTS}")

    if RETRY_BASE_DELAY <= 0 or RETRY_MAX_DELAY < RETRY_BASE_DELAY:
        errors.append("RETRY_BASE_DELAY must be positive and not above RETRY_MAX_DELAY")

    if not 0 <= RETRY_JITTER < 1:
        errors.append(f"RETRY_JITTER must be in [0, 1): {RETRY_JITTER}")

    if WORKER_CONCURRENCY < 1 or WORKER_CONCURRENCY > DB_POOL_MAX:
        errors.append("WORKER_CONCURRENCY must be between 1 and DB_POOL_MAX")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
