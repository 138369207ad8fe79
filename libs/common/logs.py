"""
logs.py – stdout logger shared by every service (json or plain text)
"""

from __future__ import annotations
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Mapping

_LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
_LOG_FORMAT = os.getenv("LOG_FORMAT", "text").lower()


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg: Mapping[str, Any] = {
            "ts": datetime.now(tz=timezone.utc).isoformat(timespec="seconds"),
            "lvl": record.levelname,
            "src": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            msg["exc"] = self.formatException(record.exc_info)
        return json.dumps(msg, ensure_ascii=False)


_TEXT_FMT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:  # un seul handler par logger
        h = logging.StreamHandler(sys.stdout)
        h.setFormatter(JsonFormatter() if _LOG_FORMAT == "json" else logging.Formatter(_TEXT_FMT))
        logger.addHandler(h)
        logger.setLevel(_LOG_LEVEL)
        logger.propagate = False
    return logger
