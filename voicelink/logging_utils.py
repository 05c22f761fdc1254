from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

RESET = "\033[0m"
LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[41m",
}
NAME_COLORS = {
    "voicelink.core.manager": "\033[35m",
    "voicelink.core.node": "\033[34m",
    "voicelink.core.pool": "\033[34m",
    "voicelink.gateway": "\033[33m",
}
FAILOVER_COLOR = "\033[96m"
FAILOVER_PHRASES = ("Failing over", "Re-homed", "Reconnected to voice node")


class StyledFormatter(logging.Formatter):
    """Console formatter that colours levels, node loggers and failover lines.

    Formatting works on a copy of the record so file handlers sharing the
    record never see escape codes.
    """

    def format(self, record: logging.LogRecord) -> str:
        styled = logging.makeLogRecord(record.__dict__)
        message = record.getMessage()
        if record.name.startswith("voicelink.core") and message.startswith(FAILOVER_PHRASES):
            message = f"{FAILOVER_COLOR}{message}{RESET}"
        styled.msg = message
        styled.args = ()

        level_color = LEVEL_COLORS.get(record.levelname)
        if level_color:
            styled.levelname = f"{level_color}{record.levelname}{RESET}"
        name_color = next(
            (color for prefix, color in NAME_COLORS.items() if record.name.startswith(prefix)),
            None,
        )
        if name_color:
            styled.name = f"{name_color}{record.name}{RESET}"
        return super().format(styled)


def configure_logging(config: LoggingConfig) -> None:
    level = getattr(logging, config.level.upper(), logging.INFO)
    # discord.py logs every gateway payload once debug events are enabled
    library_level = max(level, logging.INFO)
    for library in ("discord", "aiohttp"):
        logging.getLogger(library).setLevel(library_level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(StyledFormatter(LOG_FORMAT, DATE_FORMAT))

    logging.basicConfig(level=level, handlers=[console_handler], force=True)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logging.getLogger().addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "StyledFormatter"]
