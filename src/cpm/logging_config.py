from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path


PRICES_LOGGER = "cpm.prices"

# attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with `extra=` fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value
        if record.levelno >= logging.ERROR:
            entry["where"] = f"{record.module}:{record.funcName}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _rotating(path: Path, level: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(JsonFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
    handler.setLevel(level)
    return handler


def setup_logging(logs_dir: Path, level: int = logging.INFO) -> None:
    """Attach app, error and price-audit files under `logs_dir`. Safe to call twice."""
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    if root.handlers:
        return

    root.addHandler(_rotating(logs_dir / "app.log", level))
    root.addHandler(_rotating(logs_dir / "errors.log", logging.ERROR))

    audit = logging.getLogger(PRICES_LOGGER)
    audit.setLevel(logging.INFO)
    audit.addHandler(_rotating(logs_dir / "prices.log", logging.INFO))
