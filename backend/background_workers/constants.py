from backend.common.logging_setup import get_logger

logger = get_logger("fundamental.workers")

SENTINEL = None  # queue sentinel

DEFAULT_QUEUE_SIZE = 1000
# rows younger than this are left to the in-process fast path
STALE_AFTER_SECONDS = 30
PUBLISH_BATCH = 50
MAX_REDRIVE_ATTEMPTS = 6
REDRIVE_BACKOFF_BASE = 5.0
