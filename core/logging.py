import logging
import logging.config

from core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Install the root handler once; later calls only adjust the level."""
    global _configured
    level = (level or settings.LOG_LEVEL).upper()
    if _configured:
        logging.getLogger().setLevel(level)
        return

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"handlers": ["console"], "level": level},
            "loggers": {
                # SQL echo is controlled by SQLALCHEMY_ECHO, keep the engine quiet otherwise
                "sqlalchemy.engine": {"level": "WARNING"},
                "celery": {"level": "INFO"},
            },
        }
    )
    _configured = True
