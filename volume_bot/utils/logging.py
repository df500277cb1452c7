from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from volume_bot.config import Settings

PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Loggers whose records also go to trades.log
TRADE_LOGGERS = ("volume_bot.session", "volume_bot.smart_profit", "volume_bot.trader")


class ColoredFormatter(logging.Formatter):
    """Console formatter: level colour, overridden by trade keywords."""

    GREY = "\x1b[90m"
    NEON_GREEN = "\x1b[92m"
    NEON_CYAN = "\x1b[96m"
    NEON_RED = "\x1b[91m"
    MAGENTA = "\x1b[95m"
    YELLOW = "\x1b[93m"
    RESET = "\x1b[0m"

    DATE_FMT = "%H:%M:%S"

    # First match wins
    KEYWORDS = (
        (("EMERGENCY", "🚨", "STOP LOSS"), NEON_RED),
        (("BUY", "🟢"), NEON_GREEN),
        (("SELL", "TAKE PROFIT", "💰", "🔴"), MAGENTA),
        (("SESSION", "🚀"), NEON_CYAN),
    )

    def __init__(self) -> None:
        super().__init__(datefmt=self.DATE_FMT)

    def _color(self, record: logging.LogRecord) -> str:
        msg = str(record.msg)
        for words, color in self.KEYWORDS:
            if any(word in msg for word in words):
                return color
        if record.levelno >= logging.ERROR:
            return self.NEON_RED
        if record.levelno >= logging.WARNING:
            return self.YELLOW
        return self.GREY

    def format(self, record: logging.LogRecord) -> str:
        record.asctime = self.formatTime(record, self.DATE_FMT)
        line = f"{record.asctime} {record.name.removeprefix('volume_bot.')} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return f"{self._color(record)}{line}{self.RESET}"


class TradeRecordFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.name in TRADE_LOGGERS


def setup_logging(settings: Settings) -> None:
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)

    # Full plain-text log, rotated at 5 MB
    file_handler = RotatingFileHandler(
        log_dir / "volume_bot.log", maxBytes=5_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    trade_handler = logging.FileHandler(log_dir / "trades.log", encoding="utf-8")
    trade_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    trade_handler.addFilter(TradeRecordFilter())

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColoredFormatter())

    logger = logging.getLogger()
    logger.setLevel(settings.LOG_LEVEL)

    # Remove existing handlers to avoid duplicates on reload
    if logger.hasHandlers():
        logger.handlers.clear()

    for handler in (file_handler, trade_handler, console_handler):
        logger.addHandler(handler)

    for noisy in ("httpx", "httpcore", "aiohttp", "asyncio", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
