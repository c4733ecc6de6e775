import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

_LEVELS = {
    "fatal": logging.FATAL,
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "notset": logging.NOTSET,
}


class LoggingSettings(BaseSettings):
    use_config: bool = Field(alias="LOGGING_USE_CONFIG", default=True)
    use_pretty_json: bool = Field(alias="LOGGING_USE_PRETTY_JSON", default=False)
    level: int = Field(alias="LOGGING_LEVEL", default=logging.INFO)
    third_party_level: int = Field(alias="LOGGING_THIRD_PARTY_LEVEL", default=logging.WARNING)

    @field_validator("level", "third_party_level", mode="before")
    @classmethod
    def parse_level(cls, level: str | int | None) -> int:
        if isinstance(level, int):
            return level
        if level is not None and level.isdigit():
            return int(level)

        parsed = _LEVELS.get((level or "").lower())
        if parsed is None:
            print(f"Invalid logging level {level!r}, using INFO by default.")
            return logging.INFO
        return parsed
