import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variable to track the active capture across awaits
capture_id_ctx: ContextVar[Optional[str]] = ContextVar("capture_id", default=None)

def get_capture_id() -> str:
    """Return the active capture id, or '-' outside a job."""
    return capture_id_ctx.get() or "-"

class CaptureIDFilter(logging.Filter):
    """Injects capture_id into log records."""
    def filter(self, record):
        record.capture_id = get_capture_id()
        return True

def configure_logging(level: str = "INFO"):
    """Configures the root logger with a standard format including capture_id."""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers to avoid duplication
    if logger.handlers:
        logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | [%(capture_id)s] | %(name)s:%(funcName)s:%(lineno)d - %(message)s"
    )
    handler.setFormatter(formatter)
    handler.addFilter(CaptureIDFilter())

    logger.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)

# Initialize logging on import with configured level
from rcep.config import settings  # noqa: E402

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("rcep")
