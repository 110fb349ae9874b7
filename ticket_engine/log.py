import logging

from .config import get_settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
ROOT_LOGGER = "ticket_engine"


def setup_logging() -> logging.Logger:
    level = getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    # module loggers are already children of ROOT_LOGGER when name is __name__
    if name and name.startswith(ROOT_LOGGER):
        return logging.getLogger(name)
    base = logging.getLogger(ROOT_LOGGER)
    return base.getChild(name) if name else base
