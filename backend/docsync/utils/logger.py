import logging
import sys

from docsync.config import settings

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("docsync")


def sanitize_headers(headers: dict) -> dict:
    """Return a copy of request headers that is safe to log."""
    sanitized = dict(headers or {})
    for key in list(sanitized.keys()):
        if key.lower() in ("authorization", "x-api-key", "api-key"):
            value = str(sanitized[key])
            if len(value) > 16:
                sanitized[key] = f"{value[:10]}...{value[-4:]}"
            else:
                sanitized[key] = "***"
    return sanitized
