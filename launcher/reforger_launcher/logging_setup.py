from __future__ import annotations
import json
import logging
from logging.handlers import RotatingFileHandler
from .settings import Settings

LAUNCHER_LOGGER = "reforger.launcher"
_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _owned(handler: logging.Handler) -> bool:
    return getattr(handler, "_reforger_launcher", False)


def _install(logger: logging.Logger, handler: logging.Handler) -> None:
    handler._reforger_launcher = True
    logger.addHandler(handler)


def setup_logging(settings: Settings) -> None:
    """
    Console on the root logger, rotating launcher.log for our own loggers.

    Safe to call more than once: only handlers installed here are replaced.
    """
    logs_dir = settings.data_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    level = settings.log_level.upper()

    fmt = _JsonFormatter() if settings.log_json else logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    launcher_logger = logging.getLogger(LAUNCHER_LOGGER)
    for logger in (root, launcher_logger):
        for h in [h for h in logger.handlers if _owned(h)]:
            logger.removeHandler(h)
            h.close()
    root.setLevel(level)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    _install(root, ch)

    fh = RotatingFileHandler(logs_dir / "launcher.log", maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    fh.setFormatter(fmt)
    fh.setLevel(level)
    _install(launcher_logger, fh)
    launcher_logger.propagate = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
