import logging

from deptportal.settings import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = settings.log_level.upper()


def setup_logging() -> logging.Logger:
    # Configure root once
    logging.basicConfig(level=getattr(logging, _DEFAULT_LEVEL, logging.INFO), format=LOG_FORMAT)

    logger = logging.getLogger("deptportal")
    logger.setLevel(getattr(logging, _DEFAULT_LEVEL, logging.INFO))
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("deptportal")
    return base.getChild(name) if name else base


logger = setup_logging()
