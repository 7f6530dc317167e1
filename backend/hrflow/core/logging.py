import logging
import logging.config

from pythonjsonlogger.json import JsonFormatter

from hrflow.core.config import APP_NAME, LOG_FORMAT, LOG_JSON, LOG_LEVEL

_configured = False


class WorkflowJsonFormatter(JsonFormatter):
    """Adds the service name and any request/user ids passed via ``extra=``."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = APP_NAME
        for key in ("request_id", "user_id", "company_id"):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)


def configure_logging(level: str | None = None) -> None:
    """Install the console handler once; later calls only adjust the level."""
    global _configured
    lvl = (level or LOG_LEVEL).upper()
    if _configured:
        logging.getLogger("hrflow").setLevel(lvl)
        logging.getLogger("main").setLevel(lvl)
        return

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": LOG_FORMAT},
            "json": {
                "()": WorkflowJsonFormatter,
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "json" if LOG_JSON else "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "hrflow": {"handlers": ["console"], "level": lvl, "propagate": False},
            "main": {"handlers": ["console"], "level": lvl, "propagate": False},
        },
    })
    _configured = True
