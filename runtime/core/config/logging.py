"""Logging helpers.

The runtime uses Python logging with a JSON formatter so operators can follow
one job through the pipeline by `job_id`.
"""

from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from config.settings import load_logging_config

_STRUCTURED_EXTRAS = ("job_id", "account_id", "job_type", "event", "status", "code")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for k in _STRUCTURED_EXTRAS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True)


def apply_logging_config(logging_config_path: Path) -> None:
    logging.config.dictConfig(load_logging_config(logging_config_path))
