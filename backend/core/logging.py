import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from pythonjsonlogger import jsonlogger

_configured = False


def setup_logging(log_dir: str | None = None) -> None:
    """Configure console logging plus a JSON file rotated at midnight."""
    global _configured
    if _configured:
        return

    log_level_str = os.environ.get("LOG_LEVEL", "INFO").upper()
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if log_level_str not in valid_levels:
        log_level_str = "INFO"

    log_level = getattr(logging, log_level_str)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 1. Console Handler (Simple format)
    console_handler = logging.StreamHandler()
    console_formatter = logging.Formatter("%(levelname)s:\t%(name)s - %(message)s")
    console_handler.setFormatter(console_formatter)
    root_logger.addHandler(console_handler)

    # 2. File Handler (JSON, Timed Rotation)
    directory = Path(log_dir or os.environ.get("LOG_DIR", Path.cwd() / "data"))
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / "smartcharge.log"

    file_handler = TimedRotatingFileHandler(
        log_file, when="midnight", interval=1, backupCount=7, encoding="utf-8"
    )
    json_formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s %(module)s %(lineno)d"
    )
    file_handler.setFormatter(json_formatter)
    root_logger.addHandler(file_handler)

    # httpx logs every request URL at INFO, including the ENTSO-E token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("smartcharge").setLevel(log_level)
    _configured = True
