import sys
from logging.config import dictConfig
from typing import Any

from reportflow.core.config import settings

# Loggers of the orchestrator itself; retry, timer and registry chatter lives here
ORCHESTRATOR_LOGGERS = (
    "reportflow",
    "reportflow.api",
    "reportflow.generation_logic",
    "reportflow.services",
)


def build_logging_config(level: str | None = None) -> dict[str, Any]:
    """Uvicorn-compatible dictConfig; orchestrator loggers use ``level`` (default: settings)."""
    level = (level or settings.log_level).upper()
    orchestrator = {"handlers": ["orchestrator"], "level": level, "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": '%(levelprefix)s %(asctime)s [%(name)s] "%(request_line)s" %(status_code)s',
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stderr,
                "level": "INFO",
            },
            "access": {
                "class": "logging.StreamHandler",
                "formatter": "access",
                "stream": sys.stdout,
                "level": "INFO",
            },
            "orchestrator": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": sys.stdout,
                "level": level,
            },
        },
        "loggers": {
            "root": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            **{name: dict(orchestrator) for name in ORCHESTRATOR_LOGGERS},
        },
    }


def setup_logging(level: str | None = None) -> None:
    """Configures application-wide logging using dictConfig."""
    dictConfig(build_logging_config(level))
