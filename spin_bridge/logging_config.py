import logging

from spin_bridge.config import settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PACKAGE_LOGGER = "spin_bridge"


def configure_logging(level: str | None = None) -> None:
    """
    Install the shared format once and apply LOG_LEVEL to every spin_bridge logger.
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger(PACKAGE_LOGGER).setLevel((level or settings.log_level).upper())


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
