# server/utils/log.py
from __future__ import annotations
import logging.config
from pathlib import Path


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> None:
    """Console plus combined.log / error.log files under log_dir."""
    handlers: dict[str, dict] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
        },
    }
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers["combined"] = {
            "class": "logging.FileHandler",
            "filename": str(log_dir / "combined.log"),
            "formatter": "plain",
            "encoding": "utf-8",
        }
        handlers["errors"] = {
            "class": "logging.FileHandler",
            "filename": str(log_dir / "error.log"),
            "formatter": "plain",
            "level": "ERROR",
            "encoding": "utf-8",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
        },
        "handlers": handlers,
        "root": {"level": level.upper(), "handlers": list(handlers)},
    })
