from __future__ import annotations
import json
import logging
import sys

# extra=... keys copied onto the JSON line when present
EXTRA_KEYS = (
    "user_id",
    "kind",
    "amount",
    "source",
    "reward_id",
    "redemption_id",
    "achievement_id",
    "status",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line: datetime, level, logger, message, plus known extras."""

    def __init__(self, service_name: str | None = None) -> None:
        super().__init__(datefmt="%Y-%m-%dT%H:%M:%S")
        self._service_name = service_name

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_record: dict[str, object] = {
            "datetime": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in EXTRA_KEYS:
            if hasattr(record, key):
                log_record[key] = getattr(record, key)

        service_name = getattr(record, "service_name", None) or self._service_name
        if service_name:
            log_record["service_name"] = service_name

        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_record, ensure_ascii=False, default=str)


def setup_logger(service_name: str, level: str = "INFO") -> logging.Logger:
    """Install the JSON handler on the root logger and return the service logger."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JsonFormatter(service_name))

    root_logger = logging.getLogger()
    # re-running setup (tests, reload) must not duplicate output
    for existing in list(root_logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    return logging.getLogger(service_name)
