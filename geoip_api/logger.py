from logging import config, getLevelName, getLogger
from typing import Any

LOGGER_NAME = "geoip"


def build_log_config(level: str = "INFO", use_colors: bool = True) -> dict[str, Any]:
    """dictConfig for the service loggers, formatted like uvicorn's own output."""
    log_level = getLevelName(level.upper())  # DEBUG, INFO, WARNING, ERROR
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(levelprefix)s %(asctime)s - %(client_addr)s - "%(request_line)s" %(status_code)s',
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": use_colors,
            },
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s - %(name)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
                "use_colors": use_colors,
            },
        },
        "handlers": {
            "access": {"class": "logging.StreamHandler", "formatter": "access", "stream": "ext://sys.stdout"},
            "default": {
                "formatter": "default",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            LOGGER_NAME: {"handlers": ["default"], "level": log_level, "propagate": False},
            "uvicorn": {"handlers": ["default"], "level": log_level, "propagate": True},
            "uvicorn.access": {"handlers": ["access"], "level": log_level, "propagate": False},
            "uvicorn.error": {"level": log_level, "propagate": False},
        },
    }


def configure_logging(level: str = "INFO", use_colors: bool = True) -> None:
    config.dictConfig(build_log_config(level, use_colors))


logger = getLogger(LOGGER_NAME)
