"""
Centralized logger configuration for the posture monitor.

Provides:
- InterceptHandler: bridges stdlib logging (aiohttp, asyncio) to loguru
- LoguruCompat: formatting-friendly wrapper around a bound loguru logger
- configure_logging(app_name): sets up sinks and returns a bound app logger
"""
from __future__ import annotations

import os
import sys
import logging

from loguru import logger


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.bind(module=record.name).opt(depth=6, exception=record.exc_info).log(level, record.getMessage())


class LoguruCompat:
    """Accepts both `{}` and `%s` style messages, like the stdlib logger does."""

    def __init__(self, lg):
        self._lg = lg

    @staticmethod
    def _format_msg(*args) -> str:
        if not args:
            return ""
        fmt, rest = args[0], args[1:]
        if not isinstance(fmt, str):
            return " ".join(map(str, args))
        if not rest:
            return fmt
        if "{" in fmt and "}" in fmt:
            try:
                return fmt.format(*rest)
            except (IndexError, KeyError, ValueError):
                pass
        if "%" in fmt:
            try:
                return fmt % rest
            except (TypeError, ValueError):
                pass
        return fmt + " " + " ".join(map(str, rest))

    def bind(self, **fields) -> "LoguruCompat":
        return LoguruCompat(self._lg.bind(**fields))

    def getChild(self, name: str) -> "LoguruCompat":
        return LoguruCompat(self._lg.bind(module=name))

    def debug(self, *args):
        self._lg.opt(depth=1).debug(self._format_msg(*args))

    def info(self, *args):
        self._lg.opt(depth=1).info(self._format_msg(*args))

    def success(self, *args):
        self._lg.opt(depth=1).success(self._format_msg(*args))

    def warning(self, *args):
        self._lg.opt(depth=1).warning(self._format_msg(*args))

    def error(self, *args):
        self._lg.opt(depth=1).error(self._format_msg(*args))

    def critical(self, *args):
        self._lg.opt(depth=1).critical(self._format_msg(*args))

    def exception(self, *args):
        self._lg.opt(depth=1).exception(self._format_msg(*args))


def configure_logging(app_name: str = "posture") -> LoguruCompat:
    """
    Configure loguru sinks and stdlib logging interception.
    Returns a bound `LoguruCompat` logger for the application.
    """
    logger.remove()
    logger.configure(extra={"module": app_name})
    log_level = os.getenv("POSTURE_LOG_LEVEL", "INFO").upper()
    logger.add(
        sys.stdout,
        level=log_level,
        format="<green>{time}</green> <level>{level: <8}</level> [{extra[module]}] <level>{message}</level>",
    )

    log_file = os.getenv("POSTURE_LOG_FILE")
    if log_file:
        rotation = os.getenv("POSTURE_LOG_ROTATION", "10 MB")
        retention = os.getenv("POSTURE_LOG_RETENTION", "7 days")
        try:
            logger.add(
                log_file,
                level=log_level,
                enqueue=True,
                backtrace=True,
                diagnose=False,
                rotation=rotation,
                retention=retention,
                compression="zip",
                format="{time} | {level} | {extra[module]} | {message}",
            )
            logger.bind(module="logger").info(
                "File logging enabled: {} (rotation={} retention={})", log_file, rotation, retention
            )
        except OSError as e:
            # stdout sink stays in place
            logger.bind(module="logger").warning("Cannot open log file {}: {}", log_file, e)

    logging.root.handlers = [InterceptHandler()]
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))

    global _APP_LOGGER
    _APP_LOGGER = LoguruCompat(logger.bind(app=app_name, module=app_name))
    return _APP_LOGGER


_APP_LOGGER: LoguruCompat | None = None


def get_app_logger(app_name: str = "posture") -> LoguruCompat:
    """Return the configured application logger if available; otherwise bind a lightweight one."""
    if _APP_LOGGER is not None:
        return _APP_LOGGER
    return LoguruCompat(logger.bind(app=app_name, module=app_name))


def get_child_logger(name: str, app_name: str = "posture") -> LoguruCompat:
    """Convenience: return a child logger bound with module/name."""
    return get_app_logger(app_name).getChild(name)


__all__ = [
    "InterceptHandler",
    "LoguruCompat",
    "configure_logging",
    "get_app_logger",
    "get_child_logger",
]
