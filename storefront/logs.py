import logging
import logging.config


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": level},
            # uvicorn.error prints through the "uvicorn" handler
            "uvicorn.error": {"level": level},
            "uvicorn.access": {
                "handlers": ["console"], "level": level, "propagate": False,
            },
            # propagates to root; caplog listens there
            "storefront": {"handlers": ["console"], "level": level},
        },
    }
    logging.config.dictConfig(logging_config)
