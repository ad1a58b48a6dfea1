import logging
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "hand_pipeline"

# Thread name tells poll loops (poll-<job id>) apart from request handlers
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s'

# uvicorn logs requests and startup on its own loggers
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def setup_logging(log_level: str = "INFO", log_dir: str = "/app/data/pipeline",
                  console_level: Optional[str] = None,
                  max_bytes: int = 5 * 1024 * 1024, backup_count: int = 3) -> logging.Logger:
    """
    Log the pipeline to <log_dir>/pipeline.log and the console.

    The file always records at log_level. console_level (defaults to
    log_level) lets a deployment keep the console quieter than the file.
    The HTTP server's loggers write to the same file.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / "pipeline.log"

    level = _parse_level(log_level)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_parse_level(console_level) if console_level else level)
    console_handler.setFormatter(formatter)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    _replace_handlers(logger, file_handler, console_handler)

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        _replace_handlers(server_logger, file_handler, console_handler)
        server_logger.propagate = False

    logger.info(f"Logging initialized at {logging.getLevelName(level)}. Log file: {log_file}")
    return logger


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {name}")
    return level


def _replace_handlers(logger: logging.Logger, *handlers: logging.Handler) -> None:
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        logger.addHandler(handler)


def log_exception(logger: logging.Logger, message: str) -> None:
    """Log an error message together with the active traceback"""
    tb = traceback.format_exc()
    if tb and tb.strip() != "NoneType: None":
        logger.error(f"{message}\n{tb}")
    else:
        logger.error(message)
