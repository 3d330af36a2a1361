import logging
import os
import sys
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# 第三方库的 INFO 太吵（每个 HTTP 连接 / 每次 SQL），压到 WARNING
QUIET_LOGGERS: Dict[str, str] = {
    "urllib3": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "amqp": "WARNING",
}


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """
    worker CLI / Celery / uvicorn 三种入口共用。
    root 已有 handler（uvicorn 先配好了）时只调级别，不重复挂 handler，避免日志打两遍。
    """
    resolved_level = (level or DEFAULT_LEVEL).upper()
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(resolved_level)
    else:
        logging.basicConfig(
            level=resolved_level,
            format=LOG_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.captureWarnings(True)
    return logging.getLogger("sync_engine")
