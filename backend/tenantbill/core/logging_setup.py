import logging
import sys
from pathlib import Path

from tenantbill.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger("tenantbill")


def setup_logging(level: str | None = None, log_file: str | None = None) -> logging.Logger:
    """Attach stdout (and optionally file) handlers to the service logger once."""
    resolved = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    logger.setLevel(resolved)

    if not logger.handlers:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)

        target = log_file or settings.log_file
        if target:
            Path(target).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(target, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
