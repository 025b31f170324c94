from __future__ import annotations

import logging.config
import sys
from typing import Any, Dict, Optional

from .settings import S


def build_logging_config(level: str = S.log_level, fmt: str = S.log_format) -> Dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "json_ensure_ascii": False,
            },
            "console": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "console" if fmt == "console" else "json",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "reconciler": {"handlers": ["default"], "level": level, "propagate": False},
            # botocore is chatty at INFO
            "botocore": {"level": "WARNING"},
        },
        "root": {"handlers": ["default"], "level": "WARNING"},
    }


def configure_logging(config: Optional[Dict[str, Any]] = None) -> None:
    logging.config.dictConfig(config or build_logging_config())
