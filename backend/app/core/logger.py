import logging
from pathlib import Path

from app.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "passlib")


def _file_handler_exists(root: logging.Logger, log_path: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_path.resolve())
        for handler in root.handlers
    )


def configure_logging() -> logging.Logger:
    """Attach stream/file handlers to the root logger and return the app logger.

    Safe to call more than once: handlers are only added when missing.
    """
    level_name = (settings.log_level or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    new_handlers: list[logging.Handler] = []
    if not root.handlers:
        new_handlers.append(logging.StreamHandler())
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if not _file_handler_exists(root, log_path):
            new_handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    for handler in new_handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("giftify")
    logger.setLevel(level)
    return logger
