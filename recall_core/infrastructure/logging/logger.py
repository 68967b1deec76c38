import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any

from recall_core.config.settings import settings


LOGGER_NAME = "recall_core"


def setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    if any(getattr(h, "_recall_handler", False) for h in logger.handlers):
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "recall.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh._recall_handler = True  # type: ignore[attr-defined]

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            msg = record.getMessage()
            if settings.log_redact_content:
                msg = (msg or "")[:64]
            payload = {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "name": record.name,
                "msg": msg,
            }
            extra = getattr(record, "extra", None)
            if isinstance(extra, dict):
                payload.update(extra)
            if record.exc_info:
                payload["exc"] = self.formatException(record.exc_info)
            return json.dumps(payload, ensure_ascii=False, default=str)

    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


def log_event(level: int, message: str, **fields: Any) -> None:
    """写一条带结构化字段的日志，字段合并进 JSON 行。"""

    logger.log(level, message, extra={"extra": fields})


logger = setup_logger()
