"""Система логирования релея."""

import logging
import logging.handlers
import pathlib
import sys
from chatrelay.config import settings

# Флаг для предотвращения повторной инициализации
_logging_initialized = False

# Цвета для консоли (ANSI)
COLORS = {
    "DEBUG": "\033[36m",     # Cyan
    "INFO": "\033[32m",      # Green
    "WARNING": "\033[33m",   # Yellow
    "ERROR": "\033[31m",     # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}

LINE_FORMAT = "[%(asctime)s] %(levelname)-8s [%(short_name)s] %(message)s"

# Библиотеки, которые слишком шумят на DEBUG
NOISY_LOGGERS = {
    "aiohttp.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "redis": logging.WARNING,
    "asyncio": logging.WARNING,
}


class ColoredFormatter(logging.Formatter):
    """Форматтер с цветным выводом для консоли."""

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in COLORS:
            record.levelname = f"{COLORS[levelname]}{levelname}{COLORS['RESET']}"
        result = super().format(record)
        record.levelname = levelname
        return result


class ShortNameFilter(logging.Filter):
    """Добавляет к записи короткое имя модуля (chatrelay.services.abuse_gate -> abuse_gate)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.short_name = record.name.rsplit(".", 1)[-1] if record.name else "root"
        return True


def _rotating_handler(
    path: pathlib.Path,
    level: int,
    formatter: logging.Formatter,
    max_mb: int,
    backups: int,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ShortNameFilter())
    return handler


def setup_logging() -> None:
    """Инициализировать систему логирования."""
    global _logging_initialized

    if _logging_initialized:
        return
    _logging_initialized = True

    log_dir = pathlib.Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    file_format = logging.Formatter(LINE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    error_format = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s [%(name)s:%(lineno)d] %(message)s\n"
        "    File: %(pathname)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # relay.log (INFO+), errors.log (ERROR+), debug.log (DEBUG+)
    root_logger.addHandler(_rotating_handler(log_dir / "relay.log", level, file_format, 10, 5))
    root_logger.addHandler(_rotating_handler(log_dir / "errors.log", logging.ERROR, error_format, 5, 10))
    root_logger.addHandler(_rotating_handler(log_dir / "debug.log", logging.DEBUG, file_format, 20, 3))

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(LINE_FORMAT, datefmt="%H:%M:%S"))
    console_handler.addFilter(ShortNameFilter())
    root_logger.addHandler(console_handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    logging.info(f"Логирование: level={settings.log_level} | dir={log_dir.absolute()}")
