import logging
import logging.config
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from app.environment import EnvironmentName
from settings import settings

JSON_FORMAT = (
    "%(module)s %(asctime)s %(levelname)s %(process)d %(taskName)s %(name)s "
    "%(funcName)s %(filename)s %(lineno)d %(message)s"
)

# Chatty client libraries only log warnings and above
NOISY_LOGGERS = (
    "aioimaplib",
    "aiohttp",
    "asyncio",
    "googleapiclient",
    "google_auth_httplib2",
    "redis",
    "sqlalchemy.engine",
    "urllib3",
)


def _noisy_loggers(handler: str) -> dict[str, dict[str, Any]]:
    return {
        name: {"handlers": [handler], "level": settings.logging.third_party_level, "propagate": False}
        for name in NOISY_LOGGERS
    }


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "jsonFormat": {
            "format": JSON_FORMAT,
            "class": "logging_config.CustomJsonFormatter",
        },
    },
    "handlers": {
        "jsonStreamHandler": {
            "formatter": "jsonFormat",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "": {"handlers": ["jsonStreamHandler"], "level": settings.logging.level, "propagate": False},
        **_noisy_loggers("jsonStreamHandler"),
    },
}
LOCAL_LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s [%(levelname)s] %(taskName)s %(name)s: %(message)s"},
    },
    "handlers": {
        "default": {
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "": {"handlers": ["default"], "level": settings.logging.level, "propagate": False},
        **_noisy_loggers("default"),
    },
}


class CustomJsonFormatter(JsonFormatter):
    """JSON records, indented when developing locally with pretty output turned on."""

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._pretty = settings.environment == EnvironmentName.DEVELOPMENT and settings.logging.use_pretty_json
        if self._pretty:
            self.json_indent = 2

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["environment"] = settings.environment.value

    def format(self, record: logging.LogRecord) -> str:
        result = super().format(record)
        if self._pretty:
            result = result.replace("\\n", "\n\t\t")
        return result


def setup_logging() -> None:
    """Configure the root logger: JSON when LOGGING_USE_CONFIG is set, plain text otherwise."""
    logging.config.dictConfig(LOGGING_CONFIG if settings.logging.use_config else LOCAL_LOGGING_CONFIG)
    logging.captureWarnings(True)
    logging.disable(logging.NOTSET)
